"""
SettlementAllocator - applies a credit note against outstanding debit notes.

Core algorithm:
1. Resolve targets (explicit ids, or every open debit note of the vendor+site)
2. Order oldest first (created_at, then _id)
3. Greedily settle min(remaining, outstanding) per debit note
4. Save each touched debit note as it is updated (compare-and-swap on version)
5. Save the credit note once with its settlement history
"""

import logging
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from app.core.config import settings
from app.models.base import _utcnow
from app.models.credit_note import CreditNote, DebitNoteSettlement
from app.models.debit_note import DebitNote, DebitNoteStatus, CreditNoteLink
from app.utils.note_validation import (
    NoteValidationError,
    ConcurrentModificationError,
    validate_amount_cents,
    derive_status,
)

logger = logging.getLogger(__name__)


class AllocationResult(BaseModel):
    credit_note: CreditNote
    debit_notes: List[DebitNote] = []
    allocated_amount_cents: int
    unallocated_amount_cents: int
    fully_allocated: bool

    model_config = ConfigDict(arbitrary_types_allowed=True)


def apply_credit_to_debit_note(
    debit_note: DebitNote,
    credit_note: CreditNote,
    amount_cents: int,
    settled_on: Optional[datetime] = None
) -> DebitNote:
    """
    Return a copy of debit_note with amount_cents of credit_note applied.

    The input is left untouched; persistence is the caller's job.
    """
    outstanding = debit_note.outstanding_amount_cents()
    if amount_cents <= 0 or amount_cents > outstanding:
        raise NoteValidationError(
            f"Settlement amount must be 1 to {outstanding} cents, got {amount_cents}"
        )

    settled_on = settled_on or _utcnow()
    updated = debit_note.model_copy(deep=True)
    updated.credit_notes.append(
        CreditNoteLink(
            credit_note_id=credit_note.id,
            credit_note_number=credit_note.credit_note_number,
            settled_amount_cents=amount_cents,
            settled_on=settled_on,
            credit_note_doc=credit_note.credit_note_doc,
        )
    )
    updated.total_settled_amount_cents += amount_cents
    updated.status = derive_status(
        updated.total_settled_amount_cents, updated.grand_total_cents, updated.status
    )
    updated.updated_at = settled_on
    return updated


class SettlementAllocator:
    """Greedy oldest-first allocation of one credit note over open debit notes."""

    def __init__(self, debit_note_repo, credit_note_repo, max_retries: Optional[int] = None):
        self.debit_note_repo = debit_note_repo
        self.credit_note_repo = credit_note_repo
        self.max_retries = settings.SETTLEMENT_MAX_RETRIES if max_retries is None else max_retries

    async def allocate(self, credit_note: CreditNote) -> AllocationResult:
        """
        Run the single allocation pass for a freshly created credit note.

        Raises InvalidAmountError before any write if the credit amount is not
        positive. Unknown, foreign or settled target ids are dropped silently.
        """
        validate_amount_cents(credit_note.credit_note_amount_cents)
        if credit_note.settled_debit_notes:
            raise NoteValidationError(
                f"Credit note {credit_note.credit_note_number} has already been allocated"
            )

        candidates = await self._resolve_targets(credit_note)
        logger.info(
            "Credit note %s: %d debit note(s) to settle",
            credit_note.credit_note_number, len(candidates)
        )

        remaining = credit_note.credit_note_amount_cents
        touched: List[DebitNote] = []

        for debit_note in candidates:
            if remaining <= 0:
                break

            saved = await self._settle_one(debit_note, credit_note, remaining)
            if saved is None:
                continue
            settled_amount = saved.credit_notes[-1].settled_amount_cents

            credit_note.settled_debit_notes.append(
                DebitNoteSettlement(
                    debit_note_id=saved.id,
                    debit_note_number=saved.debit_note_number,
                    settled_amount_cents=settled_amount,
                    status=saved.status,
                )
            )
            touched.append(saved)
            remaining -= settled_amount

            logger.info(
                "Settled %d against %s (%s)",
                settled_amount, saved.debit_note_number, saved.status.value
            )

        credit_note.updated_at = _utcnow()
        credit_note = await self.credit_note_repo.save(credit_note)

        unallocated = credit_note.unallocated_amount_cents()
        if unallocated > 0:
            logger.warning(
                "Credit note %s left %d of %d unallocated",
                credit_note.credit_note_number, unallocated, credit_note.credit_note_amount_cents
            )

        return AllocationResult(
            credit_note=credit_note,
            debit_notes=touched,
            allocated_amount_cents=credit_note.allocated_amount_cents(),
            unallocated_amount_cents=unallocated,
            fully_allocated=credit_note.is_fully_allocated(),
        )

    async def _resolve_targets(self, credit_note: CreditNote) -> List[DebitNote]:
        ids = list(credit_note.debit_note_ids) or None
        found = await self.debit_note_repo.find_open(
            credit_note.company_id,
            credit_note.vendor_id,
            credit_note.site_id,
            ids=ids,
        )
        eligible = [
            note for note in found
            if note.status != DebitNoteStatus.SETTLED
            and note.company_id == credit_note.company_id
            and note.vendor_id == credit_note.vendor_id
            and note.site_id == credit_note.site_id
        ]
        return sorted(eligible, key=lambda note: (note.created_at, note.id))

    async def _settle_one(
        self,
        debit_note: DebitNote,
        credit_note: CreditNote,
        remaining: int
    ) -> Optional[DebitNote]:
        """Load → transform → save one debit note, reloading when the save loses a race."""
        attempt = 0
        while True:
            outstanding = debit_note.outstanding_amount_cents()
            if debit_note.status == DebitNoteStatus.SETTLED or outstanding <= 0:
                return None

            updated = apply_credit_to_debit_note(
                debit_note, credit_note, min(remaining, outstanding)
            )
            try:
                return await self.debit_note_repo.save(updated)
            except ConcurrentModificationError:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error(
                        "Giving up on %s after %d retries",
                        debit_note.debit_note_number, self.max_retries
                    )
                    raise
                logger.warning(
                    "Debit note %s changed concurrently, reloading (attempt %d)",
                    debit_note.debit_note_number, attempt
                )
                debit_note = await self.debit_note_repo.get(debit_note.id, debit_note.company_id)
                if debit_note is None:
                    return None
