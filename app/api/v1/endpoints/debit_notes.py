from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pymongo.errors import DuplicateKeyError

from app.api.deps import get_debit_note_service
from app.core.auth import get_current_user
from app.models.debit_note import DebitNote, DebitNoteStatus
from app.models.user import CurrentUser
from app.schemas.debit_note import (
    DebitNoteCreate,
    DebitNoteDraft,
    DebitNoteUpdate,
    DebitNoteResponse,
    DebitNoteNumberResponse,
    ReconciliationResponse,
)
from app.services.debit_note_service import DebitNoteService
from app.utils.note_validation import NoteValidationError, ConcurrentModificationError

router = APIRouter()


def _to_debit_note_response(debit_note: DebitNote) -> DebitNoteResponse:
    """Convert DebitNote model to DebitNoteResponse schema."""
    return DebitNoteResponse(
        id=str(debit_note.id),
        debit_note_number=debit_note.debit_note_number,
        debit_entry_number=debit_note.debit_entry_number,
        po_number=debit_note.po_number,
        vendor_id=str(debit_note.vendor_id),
        site_id=str(debit_note.site_id),
        dmr_entries=[str(i) for i in debit_note.dmr_entries],
        invoice_numbers=debit_note.invoice_numbers,
        items=debit_note.items,
        additional_debits=debit_note.additional_debits,
        total_amount_cents=debit_note.total_amount_cents,
        total_gst_cents=debit_note.total_gst_cents,
        grand_total_cents=debit_note.grand_total_cents,
        total_settled_amount_cents=debit_note.total_settled_amount_cents,
        outstanding_amount_cents=debit_note.outstanding_amount_cents(),
        status=debit_note.status,
        vendor_status=debit_note.vendor_status,
        credit_notes=[
            {
                "credit_note_id": str(link.credit_note_id),
                "credit_note_number": link.credit_note_number,
                "settled_amount_cents": link.settled_amount_cents,
                "settled_on": link.settled_on,
                "credit_note_doc": link.credit_note_doc
            }
            for link in debit_note.credit_notes
        ],
        remarks=debit_note.remarks,
        version=debit_note.version,
        created_at=debit_note.created_at,
        updated_at=debit_note.updated_at
    )


def _not_found():
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="Debit note not found"
    )


@router.post("", response_model=DebitNoteResponse, status_code=status.HTTP_201_CREATED)
async def create_debit_note(
    payload: DebitNoteCreate,
    current_user: CurrentUser = Depends(get_current_user),
    service: DebitNoteService = Depends(get_debit_note_service)
):
    """Raise a debit note from DMR entries."""
    try:
        debit_note = await service.create(payload, current_user)
    except NoteValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc)
        )
    except DuplicateKeyError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Debit entry number already taken for this site, retry"
        )
    return _to_debit_note_response(debit_note)


@router.get("", response_model=List[DebitNoteResponse])
async def list_debit_notes(
    site_id: Optional[str] = None,
    vendor_id: Optional[str] = None,
    po_number: Optional[str] = None,
    status_filter: Optional[DebitNoteStatus] = Query(None, alias="status"),
    current_user: CurrentUser = Depends(get_current_user),
    service: DebitNoteService = Depends(get_debit_note_service)
):
    """List debit notes, newest first."""
    debit_notes = await service.list(
        current_user.company_id,
        site_id=site_id,
        vendor_id=vendor_id,
        po_number=po_number,
        status=status_filter
    )
    return [_to_debit_note_response(debit_note) for debit_note in debit_notes]


@router.get("/next-number/{site_id}", response_model=DebitNoteNumberResponse)
async def get_next_debit_note_number(
    site_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: DebitNoteService = Depends(get_debit_note_service)
):
    debit_note_number = await service.next_number(site_id, current_user.company_id)
    return DebitNoteNumberResponse(debit_note_number=debit_note_number)


@router.get("/open-invoices")
async def list_open_invoices(
    po_number: str = "",
    current_user: CurrentUser = Depends(get_current_user),
    service: DebitNoteService = Depends(get_debit_note_service)
):
    """Invoice DMR entries of a PO not yet covered by a debit note."""
    try:
        invoices = await service.eligible_invoices(po_number, current_user.company_id)
    except NoteValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc)
        )
    return {"success": True, "data": invoices}


@router.get("/from-dmr", response_model=DebitNoteDraft)
async def draft_debit_note_from_dmr(
    dmr_ids: str = "",
    current_user: CurrentUser = Depends(get_current_user),
    service: DebitNoteService = Depends(get_debit_note_service)
):
    """Prefill a debit note from comma-separated DMR entry ids."""
    ids = [dmr_id.strip() for dmr_id in dmr_ids.split(",") if dmr_id.strip()]
    try:
        draft = await service.draft_from_dmr(ids, current_user.company_id)
    except NoteValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc)
        )
    if draft is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No DMR entries found"
        )
    return draft


@router.get("/{debit_note_id}", response_model=DebitNoteResponse)
async def get_debit_note(
    debit_note_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: DebitNoteService = Depends(get_debit_note_service)
):
    debit_note = await service.get(debit_note_id, current_user.company_id)
    if not debit_note:
        raise _not_found()
    return _to_debit_note_response(debit_note)


@router.put("/{debit_note_id}", response_model=DebitNoteResponse)
async def update_debit_note(
    debit_note_id: str,
    payload: DebitNoteUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    service: DebitNoteService = Depends(get_debit_note_service)
):
    """Edit a debit note; totals are recomputed from its lines."""
    try:
        debit_note = await service.update(debit_note_id, current_user.company_id, payload)
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
    if not debit_note:
        raise _not_found()
    return _to_debit_note_response(debit_note)


@router.post("/{debit_note_id}/sent", response_model=DebitNoteResponse)
async def mark_debit_note_sent(
    debit_note_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: DebitNoteService = Depends(get_debit_note_service)
):
    """Record that the debit note was emailed to the vendor."""
    try:
        debit_note = await service.mark_sent(debit_note_id, current_user.company_id)
    except ConcurrentModificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc)
        )
    if not debit_note:
        raise _not_found()
    return _to_debit_note_response(debit_note)


@router.get("/{debit_note_id}/reconciliation", response_model=ReconciliationResponse)
async def reconcile_debit_note(
    debit_note_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: DebitNoteService = Depends(get_debit_note_service)
):
    """Cross-check a debit note's settlements against its credit notes."""
    report = await service.reconcile(debit_note_id, current_user.company_id)
    if report is None:
        raise _not_found()
    return report
