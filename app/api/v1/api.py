from fastapi import APIRouter
from app.api.v1.endpoints import credit_notes, debit_notes

api_router = APIRouter()

api_router.include_router(debit_notes.router, prefix="/debit-notes", tags=["debit notes"])
api_router.include_router(credit_notes.router, prefix="/credit-notes", tags=["credit notes"])
