from typing import List, Optional, Union
from datetime import datetime
from bson import ObjectId
from pydantic import BaseModel, Field, field_validator

from app.models.debit_note import DebitNoteStatus


class CreditNoteCreate(BaseModel):
    """Request body to record a vendor credit note and settle debit notes with it."""
    credit_note_number: str = Field(..., min_length=1)
    credit_note_date: datetime
    credit_note_amount_cents: int = Field(..., gt=0, strict=True)
    credit_note_doc: str = Field(..., min_length=1)
    po_number: str = Field(..., min_length=1)
    vendor_id: str
    site_id: str
    # Empty means oldest-first over every open debit note of the vendor+site
    debit_note_ids: List[str] = []

    @field_validator("debit_note_ids", mode="before")
    @classmethod
    def split_single_id(cls, value: Union[str, List[str], None]):
        # Older clients send a single id, or "" for none
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("vendor_id", "site_id")
    @classmethod
    def check_object_id(cls, value: str) -> str:
        if not ObjectId.is_valid(value):
            raise ValueError("Invalid ObjectId")
        return value

    @field_validator("debit_note_ids")
    @classmethod
    def check_object_ids(cls, value: List[str]) -> List[str]:
        for item in value:
            if not ObjectId.is_valid(item):
                raise ValueError(f"Invalid debit note id: {item}")
        return value


class DebitNoteSettlementResponse(BaseModel):
    debit_note_id: str
    debit_note_number: str
    settled_amount_cents: int
    status: DebitNoteStatus


class CreditNoteResponse(BaseModel):
    id: str
    credit_note_number: str
    credit_note_date: datetime
    credit_note_amount_cents: int
    credit_note_doc: str
    po_number: str
    vendor_id: str
    site_id: str
    debit_note_ids: List[str]
    settled_debit_notes: List[DebitNoteSettlementResponse]
    allocated_amount_cents: int
    unallocated_amount_cents: int
    fully_allocated: bool
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class CreditNoteCreateResponse(BaseModel):
    message: str
    credit_note: CreditNoteResponse
