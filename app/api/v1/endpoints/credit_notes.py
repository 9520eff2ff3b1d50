import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pymongo.errors import PyMongoError

from app.api.deps import get_credit_note_service
from app.core.auth import get_current_user
from app.models.credit_note import CreditNote
from app.models.user import CurrentUser
from app.schemas.credit_note import (
    CreditNoteCreate,
    CreditNoteCreateResponse,
    CreditNoteResponse,
)
from app.services.credit_note_service import CreditNoteService
from app.utils.note_validation import (
    NoteValidationError,
    ConcurrentModificationError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_credit_note_response(credit_note: CreditNote) -> CreditNoteResponse:
    """Convert CreditNote model to CreditNoteResponse schema."""
    return CreditNoteResponse(
        id=str(credit_note.id),
        credit_note_number=credit_note.credit_note_number,
        credit_note_date=credit_note.credit_note_date,
        credit_note_amount_cents=credit_note.credit_note_amount_cents,
        credit_note_doc=credit_note.credit_note_doc,
        po_number=credit_note.po_number,
        vendor_id=str(credit_note.vendor_id),
        site_id=str(credit_note.site_id),
        debit_note_ids=[str(i) for i in credit_note.debit_note_ids],
        settled_debit_notes=[
            {
                "debit_note_id": str(entry.debit_note_id),
                "debit_note_number": entry.debit_note_number,
                "settled_amount_cents": entry.settled_amount_cents,
                "status": entry.status
            }
            for entry in credit_note.settled_debit_notes
        ],
        allocated_amount_cents=credit_note.allocated_amount_cents(),
        unallocated_amount_cents=credit_note.unallocated_amount_cents(),
        fully_allocated=credit_note.is_fully_allocated(),
        created_by=credit_note.created_by,
        created_at=credit_note.created_at,
        updated_at=credit_note.updated_at
    )


@router.post("", response_model=CreditNoteCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_credit_note(
    payload: CreditNoteCreate,
    current_user: CurrentUser = Depends(get_current_user),
    service: CreditNoteService = Depends(get_credit_note_service)
):
    """Record a credit note and settle debit notes with it, oldest first."""
    try:
        result = await service.create(payload, current_user)
    except ConcurrentModificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc)
        )
    except NoteValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc)
        )
    except (PersistenceError, PyMongoError) as exc:
        logger.exception("Error creating credit note %s", payload.credit_note_number)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Server error: {exc}"
        )

    return CreditNoteCreateResponse(
        message="Credit note created and debit notes settled successfully",
        credit_note=_to_credit_note_response(result.credit_note)
    )


@router.get("", response_model=List[CreditNoteResponse])
async def list_credit_notes(
    vendor_id: Optional[str] = None,
    site_id: Optional[str] = None,
    po_number: Optional[str] = None,
    current_user: CurrentUser = Depends(get_current_user),
    service: CreditNoteService = Depends(get_credit_note_service)
):
    """List credit notes of the caller's company, newest first."""
    credit_notes = await service.list(
        current_user.company_id, vendor_id=vendor_id, site_id=site_id, po_number=po_number
    )
    return [_to_credit_note_response(credit_note) for credit_note in credit_notes]


@router.get("/{credit_note_id}", response_model=CreditNoteResponse)
async def get_credit_note(
    credit_note_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: CreditNoteService = Depends(get_credit_note_service)
):
    credit_note = await service.get(credit_note_id, current_user.company_id)
    if not credit_note:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credit note not found"
        )
    return _to_credit_note_response(credit_note)
