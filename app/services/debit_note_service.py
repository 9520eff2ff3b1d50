import logging
from datetime import date, datetime
from typing import List, Optional

from bson import ObjectId

from app.models.base import _utcnow
from app.models.debit_note import DebitNote, DebitNoteStatus, DebitNoteItem, AdditionalDebit
from app.models.user import CurrentUser
from app.repositories.credit_note_repo import CreditNoteRepository
from app.repositories.debit_note_repo import DebitNoteRepository
from app.schemas.debit_note import (
    DebitNoteCreate,
    DebitNoteDraft,
    DebitNoteUpdate,
    ReconciliationIssue,
    ReconciliationResponse,
)
from app.utils.note_validation import (
    NoteValidationError,
    validate_items,
    validate_additional_debits,
    calculate_totals,
    derive_status,
    gst_cents,
    line_amount_cents,
    next_debit_note_number,
)

logger = logging.getLogger(__name__)


def _merge_dmr_line(merged: dict, line: dict) -> None:
    """Fold one DMR item into the draft line for its item_id."""
    key = str(line.get("item_id") or line.get("item_name") or "")
    quantity = line.get("debit_qty") or 0
    rate = line.get("rate_cents") or 0
    gst_percentage = line.get("gst_percentage") or 0
    amount = line_amount_cents(quantity, rate)
    gst = gst_cents(amount, gst_percentage)

    item = merged.get(key)
    if item is None:
        merged[key] = DebitNoteItem(
            item_id=str(line["item_id"]) if line.get("item_id") else None,
            item_name=line.get("item_name") or "",
            uom=line.get("uom") or "",
            description=line.get("specification") or "",
            po_qty=line.get("required_qty") or 0,
            invoice_qty=line.get("invoice_qty") or 0,
            received_qty=line.get("received_qty") or 0,
            rate_cents=rate,
            invoice_rate_cents=line.get("invoice_rate_cents") or 0,
            debit_qty=quantity,
            debit_reason=line.get("debit_reason") or "",
            amount_cents=amount,
            gst_percentage=gst_percentage,
            gst_cents=gst,
        )
        return

    item.invoice_qty += line.get("invoice_qty") or 0
    item.received_qty += line.get("received_qty") or 0
    item.debit_qty += quantity
    item.amount_cents += amount
    item.gst_cents += gst
    # Latest entry's GST rate wins
    item.gst_percentage = gst_percentage


class DebitNoteService:
    def __init__(self, debit_note_repo: DebitNoteRepository, credit_note_repo: CreditNoteRepository):
        self.debit_note_repo = debit_note_repo
        self.credit_note_repo = credit_note_repo

    async def create(self, payload: DebitNoteCreate, user: CurrentUser) -> DebitNote:
        """Raise a debit note with totals computed from its lines."""
        validate_items(payload.items)
        validate_additional_debits(payload.additional_debits)
        total_amount, total_gst, grand_total = calculate_totals(
            payload.items, payload.additional_debits
        )

        entry_number = await self.debit_note_repo.highest_entry_number(
            payload.site_id, user.company_id
        ) + 1
        debit_note_number = payload.debit_note_number or await self._number_for_entry(
            entry_number, payload.delivery_address, payload.site_id, user.company_id
        )

        debit_note = DebitNote(
            company_id=ObjectId(user.company_id),
            debit_note_number=debit_note_number,
            debit_entry_number=entry_number,
            po_number=payload.po_number,
            vendor_id=ObjectId(payload.vendor_id),
            site_id=ObjectId(payload.site_id),
            dmr_entries=[ObjectId(i) for i in payload.dmr_entries],
            invoice_numbers=payload.invoice_numbers,
            vendor_detail=payload.vendor_detail,
            billing_address=payload.billing_address,
            delivery_address=payload.delivery_address,
            items=payload.items,
            additional_debits=payload.additional_debits,
            total_amount_cents=total_amount,
            total_gst_cents=total_gst,
            grand_total_cents=grand_total,
            remarks=payload.remarks,
            status=DebitNoteStatus.RAISED,
            credit_notes=[],
            created_by=user.id,
        )
        debit_note = await self.debit_note_repo.create(debit_note)
        logger.info(
            "Raised debit note %s for PO %s (%d)",
            debit_note.debit_note_number, debit_note.po_number, debit_note.grand_total_cents
        )
        return debit_note

    async def get(self, debit_note_id: str, company_id: str) -> Optional[DebitNote]:
        return await self.debit_note_repo.get(debit_note_id, company_id)

    async def list(
        self,
        company_id: str,
        site_id: Optional[str] = None,
        vendor_id: Optional[str] = None,
        po_number: Optional[str] = None,
        status: Optional[DebitNoteStatus] = None
    ) -> List[DebitNote]:
        return await self.debit_note_repo.list(
            company_id, site_id=site_id, vendor_id=vendor_id, po_number=po_number, status=status
        )

    async def update(
        self,
        debit_note_id: str,
        company_id: str,
        payload: DebitNoteUpdate
    ) -> Optional[DebitNote]:
        """
        Administrative edit.

        Totals are recomputed when lines change. The grand total may not drop
        below what credit notes have already settled.
        """
        debit_note = await self.debit_note_repo.get(debit_note_id, company_id)
        if debit_note is None:
            return None

        changes = payload.model_dump(exclude_unset=True)
        updated = debit_note.model_copy(deep=True)
        for field in ("remarks", "invoice_numbers", "vendor_detail", "billing_address", "delivery_address"):
            if field in changes and changes[field] is not None:
                setattr(updated, field, changes[field])

        if payload.items is not None or payload.additional_debits is not None:
            items = payload.items if payload.items is not None else updated.items
            additional = (
                payload.additional_debits
                if payload.additional_debits is not None
                else updated.additional_debits
            )
            validate_items(items)
            validate_additional_debits(additional)
            total_amount, total_gst, grand_total = calculate_totals(items, additional)

            if grand_total < updated.total_settled_amount_cents:
                raise NoteValidationError(
                    f"Grand total {grand_total} is below the settled amount "
                    f"{updated.total_settled_amount_cents}"
                )
            updated.items = items
            updated.additional_debits = additional
            updated.total_amount_cents = total_amount
            updated.total_gst_cents = total_gst
            updated.grand_total_cents = grand_total
            updated.status = derive_status(
                updated.total_settled_amount_cents, grand_total, updated.status
            )

        updated.updated_at = _utcnow()
        return await self.debit_note_repo.save(updated)

    async def mark_sent(
        self,
        debit_note_id: str,
        company_id: str,
        when: Optional[datetime] = None
    ) -> Optional[DebitNote]:
        """Record that the debit note went out to the vendor."""
        debit_note = await self.debit_note_repo.get(debit_note_id, company_id)
        if debit_note is None:
            return None

        updated = debit_note.model_copy(deep=True)
        updated.vendor_status.emailed = True
        updated.vendor_status.date = when or _utcnow()
        if updated.status == DebitNoteStatus.RAISED:
            updated.status = DebitNoteStatus.SENT
        updated.updated_at = _utcnow()
        return await self.debit_note_repo.save(updated)

    async def _number_for_entry(
        self,
        entry_number: int,
        delivery_address: dict,
        site_id: str,
        company_id: str
    ) -> str:
        site_code = (delivery_address or {}).get("site_code")
        if site_code:
            return f"DNN_{site_code}_{entry_number:04d}"
        return await self.next_number(site_id, company_id)

    async def next_number(self, site_id: str, company_id: str, today: Optional[date] = None) -> str:
        """Next DN-<year>-<year+1>-NNNN number for a site."""
        latest = await self.debit_note_repo.latest_for_site(site_id, company_id)
        return next_debit_note_number(
            latest.debit_note_number if latest else None,
            today or date.today()
        )

    async def eligible_invoices(self, po_number: str, company_id: str) -> List[dict]:
        if not po_number:
            raise NoteValidationError("po_number is required")
        return await self.debit_note_repo.eligible_invoices(po_number, company_id)

    async def draft_from_dmr(self, dmr_ids: List[str], company_id: str) -> Optional[DebitNoteDraft]:
        """
        Prefill a debit note from the selected DMR entries of one PO.

        Lines are merged by item_id. Freight and other charges become lines only
        where the vendor invoiced more than the PO allows. Nothing is saved;
        the draft is posted back through create().
        """
        if not dmr_ids:
            raise NoteValidationError("dmr_ids is required")

        entries = await self.debit_note_repo.find_dmr_entries(dmr_ids, company_id)
        if not entries:
            return None

        first = entries[0]
        po_number = first.get("po_number") or ""
        site_id = first.get("site_id") or ""
        vendor_id = (first.get("vendor_detail") or {}).get("_id") or ""
        if not ObjectId.is_valid(site_id) or not ObjectId.is_valid(vendor_id):
            raise NoteValidationError("DMR entries have no vendor or site")
        if any(entry.get("po_number") != po_number for entry in entries):
            raise NoteValidationError("DMR entries belong to different purchase orders")

        order = await self.debit_note_repo.find_dmr_order(po_number, company_id) or {}

        merged = {}
        freight = other_charges = 0
        rate_difference = rate_difference_gst = 0
        for entry in entries:
            freight += entry.get("freight_cents") or 0
            other_charges += entry.get("other_charges_cents") or 0
            extra = entry.get("other_debit_amount_cents") or 0
            rate_difference += extra
            rate_difference_gst += gst_cents(extra, entry.get("other_debit_gst_percentage") or 0)
            for line in entry.get("items") or []:
                _merge_dmr_line(merged, line)

        items = list(merged.values())
        po_freight = order.get("freight_total_cents") or 0
        if freight and (order.get("invoice_freight_total_cents") or 0) > po_freight:
            items.append(DebitNoteItem(
                item_name="Freight", rate_cents=po_freight,
                invoice_rate_cents=freight, amount_cents=freight
            ))
        po_other_charges = order.get("other_charges_total_cents") or 0
        if other_charges and (order.get("invoice_other_charges_total_cents") or 0) > po_other_charges:
            items.append(DebitNoteItem(
                item_name="Other Charges", rate_cents=po_other_charges,
                invoice_rate_cents=other_charges, amount_cents=other_charges
            ))
        additional_debits = [
            AdditionalDebit(
                type="Rate Difference", amount_cents=rate_difference, gst_cents=rate_difference_gst
            )
        ]
        total_amount, total_gst, grand_total = calculate_totals(items, additional_debits)

        delivery_address = order.get("delivery_address") or {}
        entry_number = await self.debit_note_repo.highest_entry_number(site_id, company_id) + 1
        debit_note_number = await self._number_for_entry(
            entry_number, delivery_address, site_id, company_id
        )

        logger.info(
            "Drafted debit note %s from %d DMR entries of PO %s",
            debit_note_number, len(entries), po_number
        )
        return DebitNoteDraft(
            debit_note_number=debit_note_number,
            debit_entry_number=entry_number,
            po_number=po_number,
            vendor_id=vendor_id,
            site_id=site_id,
            dmr_entries=[entry["_id"] for entry in entries],
            invoice_numbers=[e["invoice_number"] for e in entries if e.get("invoice_number")],
            vendor_detail=order.get("vendor_detail") or first.get("vendor_detail") or {},
            billing_address=order.get("billing_address") or {},
            delivery_address=delivery_address,
            items=items,
            additional_debits=additional_debits,
            total_amount_cents=total_amount,
            total_gst_cents=total_gst,
            grand_total_cents=grand_total,
        )

    async def reconcile(self, debit_note_id: str, company_id: str) -> Optional[ReconciliationResponse]:
        """Check the debit note's settlement history against its credit notes."""
        debit_note = await self.debit_note_repo.get(debit_note_id, company_id)
        if debit_note is None:
            return None

        issues: List[ReconciliationIssue] = []
        history_total = sum(link.settled_amount_cents for link in debit_note.credit_notes)
        if history_total != debit_note.total_settled_amount_cents:
            issues.append(ReconciliationIssue(
                message=(
                    f"Settled total {debit_note.total_settled_amount_cents} does not match "
                    f"history total {history_total}"
                )
            ))
        if debit_note.total_settled_amount_cents > debit_note.grand_total_cents:
            issues.append(ReconciliationIssue(
                message="Settled total exceeds grand total"
            ))

        credit_notes = await self.credit_note_repo.find_by_debit_note(debit_note.id, company_id)
        mirrored = {}
        for credit_note in credit_notes:
            mirrored[credit_note.id] = sum(
                entry.settled_amount_cents
                for entry in credit_note.settled_debit_notes
                if entry.debit_note_id == debit_note.id
            )

        linked = {}
        for link in debit_note.credit_notes:
            linked[link.credit_note_id] = linked.get(link.credit_note_id, 0) + link.settled_amount_cents

        for credit_note_id in set(linked) | set(mirrored):
            ours = linked.get(credit_note_id)
            theirs = mirrored.get(credit_note_id)
            if ours is None:
                message = "Credit note references this debit note but no settlement is recorded here"
            elif theirs is None:
                message = "Settlement recorded here is missing from the credit note"
            elif ours != theirs:
                message = f"Settled {ours} here but {theirs} on the credit note"
            else:
                continue
            issues.append(ReconciliationIssue(credit_note_id=str(credit_note_id), message=message))

        if issues:
            logger.warning(
                "Debit note %s failed reconciliation with %d issue(s)",
                debit_note.debit_note_number, len(issues)
            )

        return ReconciliationResponse(
            debit_note_id=str(debit_note.id),
            total_settled_amount_cents=debit_note.total_settled_amount_cents,
            history_total_cents=history_total,
            is_consistent=not issues,
            issues=issues,
        )
