from typing import List
from datetime import datetime
from pydantic import BaseModel

from app.models.base import MongoModel, PyObjectId
from app.models.debit_note import DebitNoteStatus


class DebitNoteSettlement(BaseModel):
    """Mirror of a CreditNoteLink, kept on the credit note side."""
    debit_note_id: PyObjectId
    debit_note_number: str
    settled_amount_cents: int
    status: DebitNoteStatus


class CreditNote(MongoModel):
    """
    Vendor-issued credit applied against outstanding debit notes.

    Invariant: sum(settled_debit_notes.settled_amount_cents) <= credit_note_amount_cents
    """
    credit_note_number: str
    credit_note_date: datetime
    credit_note_amount_cents: int
    credit_note_doc: str
    po_number: str
    vendor_id: PyObjectId
    site_id: PyObjectId

    # Targets requested by the caller; empty means oldest-first over the vendor+site
    debit_note_ids: List[PyObjectId] = []
    settled_debit_notes: List[DebitNoteSettlement] = []

    created_by: str = ""
    updated_by: str = ""

    def allocated_amount_cents(self) -> int:
        return sum(entry.settled_amount_cents for entry in self.settled_debit_notes)

    def unallocated_amount_cents(self) -> int:
        return self.credit_note_amount_cents - self.allocated_amount_cents()

    def is_fully_allocated(self) -> bool:
        return self.unallocated_amount_cents() <= 0
