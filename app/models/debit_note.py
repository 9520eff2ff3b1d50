"""
Debit note model - claims raised against a vendor.

Design principles:
- Raised from DMR (delivery material receipt) entries with a shortfall,
  rate mismatch or quality deduction
- grand_total_cents fixed by the lines; only settlement fields move afterwards
- Status: raised → sent → partial → settled
- All amounts in integer cents (paise)
"""

from enum import Enum
from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, Field

from app.models.base import MongoModel, PyObjectId, _utcnow


class DebitNoteStatus(str, Enum):
    RAISED = "raised"
    SENT = "sent"
    PARTIAL = "partial"
    SETTLED = "settled"


class DebitNoteItem(BaseModel):
    item_id: Optional[str] = None
    item_name: str = ""
    uom: str = ""
    description: str = ""
    po_qty: float = 0
    received_qty: float = 0
    invoice_qty: float = 0
    rate_cents: int = 0
    invoice_rate_cents: int = 0
    debit_qty: float = 0
    debit_reason: str = ""
    amount_cents: int = 0
    gst_percentage: float = 0
    gst_cents: int = 0


class AdditionalDebit(BaseModel):
    """Freight, other charges, rate difference, late delivery..."""
    type: str
    label: str = ""
    debit_reason: str = ""
    amount_cents: int = 0
    gst_cents: int = 0


class VendorStatus(BaseModel):
    emailed: bool = False
    date: Optional[datetime] = None


class CreditNoteLink(BaseModel):
    """One credit note's settlement against this debit note."""
    credit_note_id: PyObjectId
    credit_note_number: str
    settled_amount_cents: int
    settled_on: datetime = Field(default_factory=_utcnow)
    credit_note_doc: str = ""


class DebitNote(MongoModel):
    """
    Financial claim: vendor owes grand_total_cents back to the company.

    Invariants:
    - total_settled_amount_cents == sum(credit_notes.settled_amount_cents)
    - total_settled_amount_cents <= grand_total_cents
    - status = settled iff total_settled_amount_cents >= grand_total_cents
    """
    debit_note_number: str
    debit_entry_number: int

    # References
    po_number: str
    vendor_id: PyObjectId
    site_id: PyObjectId
    dmr_entries: List[PyObjectId] = []
    invoice_numbers: List[str] = []

    # Snapshots taken at creation
    vendor_detail: dict = {}
    billing_address: dict = {}
    delivery_address: dict = {}

    items: List[DebitNoteItem] = []
    additional_debits: List[AdditionalDebit] = []

    # Financial
    total_amount_cents: int = 0
    total_gst_cents: int = 0
    grand_total_cents: int = 0
    total_settled_amount_cents: int = 0

    remarks: str = ""
    status: DebitNoteStatus = DebitNoteStatus.RAISED
    vendor_status: VendorStatus = Field(default_factory=VendorStatus)
    credit_notes: List[CreditNoteLink] = []

    created_by: str = ""
    version: int = 1

    def outstanding_amount_cents(self) -> int:
        """How much remains unsettled."""
        return self.grand_total_cents - self.total_settled_amount_cents
