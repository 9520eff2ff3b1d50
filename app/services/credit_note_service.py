import logging
from typing import List, Optional

from bson import ObjectId

from app.models.credit_note import CreditNote
from app.models.user import CurrentUser
from app.repositories.credit_note_repo import CreditNoteRepository
from app.repositories.debit_note_repo import DebitNoteRepository
from app.schemas.credit_note import CreditNoteCreate
from app.services.settlement_allocator import SettlementAllocator, AllocationResult
from app.utils.note_validation import validate_amount_cents

logger = logging.getLogger(__name__)


class CreditNoteService:
    def __init__(self, debit_note_repo: DebitNoteRepository, credit_note_repo: CreditNoteRepository):
        self.debit_note_repo = debit_note_repo
        self.credit_note_repo = credit_note_repo
        self.allocator = SettlementAllocator(debit_note_repo, credit_note_repo)

    async def create(self, payload: CreditNoteCreate, user: CurrentUser) -> AllocationResult:
        """
        Record a vendor credit note and settle debit notes with it.

        The amount is checked before anything is written. The credit note is
        created with an empty history, then the allocator fills it in.
        """
        validate_amount_cents(payload.credit_note_amount_cents)

        credit_note = CreditNote(
            company_id=ObjectId(user.company_id),
            credit_note_number=payload.credit_note_number,
            credit_note_date=payload.credit_note_date,
            credit_note_amount_cents=payload.credit_note_amount_cents,
            credit_note_doc=payload.credit_note_doc,
            po_number=payload.po_number,
            vendor_id=ObjectId(payload.vendor_id),
            site_id=ObjectId(payload.site_id),
            debit_note_ids=[ObjectId(i) for i in payload.debit_note_ids],
            settled_debit_notes=[],
            created_by=user.id,
            updated_by=user.id,
        )
        credit_note = await self.credit_note_repo.create(credit_note)

        result = await self.allocator.allocate(credit_note)
        if not result.credit_note.settled_debit_notes:
            logger.warning(
                "Credit note %s matched no open debit notes for vendor %s at site %s",
                payload.credit_note_number, payload.vendor_id, payload.site_id
            )
        return result

    async def get(self, credit_note_id: str, company_id: str) -> Optional[CreditNote]:
        return await self.credit_note_repo.get(credit_note_id, company_id)

    async def list(
        self,
        company_id: str,
        vendor_id: Optional[str] = None,
        site_id: Optional[str] = None,
        po_number: Optional[str] = None
    ) -> List[CreditNote]:
        return await self.credit_note_repo.list(
            company_id, vendor_id=vendor_id, site_id=site_id, po_number=po_number
        )
