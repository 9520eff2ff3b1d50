"""Debit/credit note validation utilities."""
import re
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple

from app.models.debit_note import DebitNoteItem, AdditionalDebit, DebitNoteStatus


class NoteValidationError(Exception):
    """Custom exception for debit/credit note validation errors."""
    pass


class InvalidAmountError(NoteValidationError):
    """Amount is zero, negative or not a number."""
    pass


class ConcurrentModificationError(NoteValidationError):
    """A debit note changed between read and write."""
    pass


class PersistenceError(Exception):
    """A write to the note store was not applied."""
    pass


def validate_amount_cents(amount_cents) -> None:
    """Reject anything but a positive integer amount."""
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise InvalidAmountError(f"Amount must be an integer number of cents: {amount_cents!r}")
    if amount_cents <= 0:
        raise InvalidAmountError(f"Amount must be positive: {amount_cents}")


def gst_cents(amount_cents: int, gst_percentage: float) -> int:
    """GST on an amount, rounded half-up to the cent."""
    value = Decimal(amount_cents) * Decimal(str(gst_percentage)) / Decimal(100)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def line_amount_cents(quantity: float, rate_cents: int) -> int:
    """quantity x rate, rounded half-up to the cent."""
    value = Decimal(str(quantity or 0)) * Decimal(rate_cents or 0)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def validate_items(items: List[DebitNoteItem]) -> None:
    """
    Validate debit note lines.

    Rules:
    - amounts and GST must be non-negative
    - debit_qty must be non-negative
    """
    for item in items:
        if item.amount_cents < 0 or item.gst_cents < 0:
            raise NoteValidationError(
                f"Item '{item.item_name}' has a negative amount"
            )
        if item.debit_qty < 0:
            raise NoteValidationError(
                f"Item '{item.item_name}' has negative debit quantity: {item.debit_qty}"
            )


def validate_additional_debits(additional_debits: Optional[List[AdditionalDebit]]) -> None:
    if not additional_debits:
        return

    for debit in additional_debits:
        if debit.amount_cents < 0 or debit.gst_cents < 0:
            raise NoteValidationError(
                f"Additional debit '{debit.type}' has a negative amount"
            )


def calculate_totals(
    items: List[DebitNoteItem],
    additional_debits: Optional[List[AdditionalDebit]] = None
) -> Tuple[int, int, int]:
    """Return (total_amount_cents, total_gst_cents, grand_total_cents)."""
    additional_debits = additional_debits or []
    total_amount = sum(i.amount_cents for i in items) + sum(d.amount_cents for d in additional_debits)
    total_gst = sum(i.gst_cents for i in items) + sum(d.gst_cents for d in additional_debits)
    return total_amount, total_gst, total_amount + total_gst


def derive_status(
    total_settled_cents: int,
    grand_total_cents: int,
    current: DebitNoteStatus
) -> DebitNoteStatus:
    """
    Status from the settled total.

    settled iff total_settled >= grand_total, partial if anything was settled,
    otherwise the non-financial status (raised/sent) is kept.
    """
    if total_settled_cents > 0 and total_settled_cents >= grand_total_cents:
        return DebitNoteStatus.SETTLED
    if total_settled_cents > 0:
        return DebitNoteStatus.PARTIAL
    if current in (DebitNoteStatus.PARTIAL, DebitNoteStatus.SETTLED):
        return DebitNoteStatus.RAISED
    return current


_TRAILING_DIGITS = re.compile(r"(\d+)$")


def next_debit_note_number(last_number: Optional[str], today: date) -> str:
    """DN-<year>-<year+1>-NNNN, continuing the trailing sequence of last_number."""
    sequence = 0
    if last_number:
        match = _TRAILING_DIGITS.search(last_number)
        if match:
            sequence = int(match.group(1))
    financial_year = f"{today.year}-{today.year + 1}"
    return f"DN-{financial_year}-{sequence + 1:04d}"
