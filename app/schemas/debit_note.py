from typing import Optional, List
from datetime import datetime
from bson import ObjectId
from pydantic import BaseModel, Field, field_validator

from app.models.debit_note import (
    DebitNoteItem,
    AdditionalDebit,
    DebitNoteStatus,
    VendorStatus,
)


class DebitNoteCreate(BaseModel):
    """Debit note raised from one or more DMR entries."""
    po_number: str = Field(..., min_length=1)
    vendor_id: str
    site_id: str
    dmr_entries: List[str] = Field(..., min_length=1)
    debit_note_number: Optional[str] = None
    invoice_numbers: List[str] = []
    vendor_detail: dict = {}
    billing_address: dict = {}
    delivery_address: dict = {}
    items: List[DebitNoteItem] = []
    additional_debits: List[AdditionalDebit] = []
    remarks: str = ""

    @field_validator("vendor_id", "site_id")
    @classmethod
    def check_object_id(cls, value: str) -> str:
        if not ObjectId.is_valid(value):
            raise ValueError("Invalid ObjectId")
        return value

    @field_validator("dmr_entries")
    @classmethod
    def check_dmr_entries(cls, value: List[str]) -> List[str]:
        for item in value:
            if not ObjectId.is_valid(item):
                raise ValueError(f"Invalid DMR entry id: {item}")
        return value


class DebitNoteUpdate(BaseModel):
    """Administrative edit. Settlement fields are not editable."""
    items: Optional[List[DebitNoteItem]] = None
    additional_debits: Optional[List[AdditionalDebit]] = None
    remarks: Optional[str] = None
    invoice_numbers: Optional[List[str]] = None
    vendor_detail: Optional[dict] = None
    billing_address: Optional[dict] = None
    delivery_address: Optional[dict] = None


class CreditNoteLinkResponse(BaseModel):
    credit_note_id: str
    credit_note_number: str
    settled_amount_cents: int
    settled_on: datetime
    credit_note_doc: str


class DebitNoteResponse(BaseModel):
    id: str
    debit_note_number: str
    debit_entry_number: int
    po_number: str
    vendor_id: str
    site_id: str
    dmr_entries: List[str]
    invoice_numbers: List[str]
    items: List[DebitNoteItem]
    additional_debits: List[AdditionalDebit]
    total_amount_cents: int
    total_gst_cents: int
    grand_total_cents: int
    total_settled_amount_cents: int
    outstanding_amount_cents: int
    status: DebitNoteStatus
    vendor_status: VendorStatus
    credit_notes: List[CreditNoteLinkResponse]
    remarks: str
    version: int
    created_at: datetime
    updated_at: datetime


class DebitNoteDraft(BaseModel):
    """Debit note prefilled from DMR entries, to be reviewed and posted to create."""
    debit_note_number: str
    debit_entry_number: int
    po_number: str
    vendor_id: str
    site_id: str
    dmr_entries: List[str]
    invoice_numbers: List[str] = []
    vendor_detail: dict = {}
    billing_address: dict = {}
    delivery_address: dict = {}
    items: List[DebitNoteItem] = []
    additional_debits: List[AdditionalDebit] = []
    total_amount_cents: int
    total_gst_cents: int
    grand_total_cents: int
    status: DebitNoteStatus = DebitNoteStatus.RAISED


class DebitNoteNumberResponse(BaseModel):
    debit_note_number: str


class ReconciliationIssue(BaseModel):
    credit_note_id: Optional[str] = None
    message: str


class ReconciliationResponse(BaseModel):
    """Cross-check of a debit note against its credit notes."""
    debit_note_id: str
    total_settled_amount_cents: int
    history_total_cents: int
    is_consistent: bool
    issues: List[ReconciliationIssue] = []
