from fastapi import Depends

from app.db.mongo import get_db
from app.repositories.credit_note_repo import CreditNoteRepository
from app.repositories.debit_note_repo import DebitNoteRepository
from app.services.credit_note_service import CreditNoteService
from app.services.debit_note_service import DebitNoteService


def get_debit_note_repo(db = Depends(get_db)) -> DebitNoteRepository:
    return DebitNoteRepository(db)


def get_credit_note_repo(db = Depends(get_db)) -> CreditNoteRepository:
    return CreditNoteRepository(db)


def get_credit_note_service(
    debit_note_repo = Depends(get_debit_note_repo),
    credit_note_repo = Depends(get_credit_note_repo)
) -> CreditNoteService:
    return CreditNoteService(debit_note_repo, credit_note_repo)


def get_debit_note_service(
    debit_note_repo = Depends(get_debit_note_repo),
    credit_note_repo = Depends(get_credit_note_repo)
) -> DebitNoteService:
    return DebitNoteService(debit_note_repo, credit_note_repo)
