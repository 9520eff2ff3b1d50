from typing import List, Optional
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId

from app.models.credit_note import CreditNote
from app.repositories.debit_note_repo import IdLike, _oid
from app.utils.note_validation import PersistenceError


class CreditNoteRepository:
    """Credit note database operations."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["credit_notes"]

    async def create(self, credit_note: CreditNote) -> CreditNote:
        """Insert a new credit note (settlement history still empty)."""
        result = await self.collection.insert_one(credit_note.to_document())
        credit_note.id = result.inserted_id
        return credit_note

    async def save(self, credit_note: CreditNote) -> CreditNote:
        """Persist the settlement history of a credit note."""
        result = await self.collection.update_one(
            {"_id": credit_note.id, "company_id": credit_note.company_id},
            {
                "$set": {
                    "settled_debit_notes": [
                        entry.model_dump() for entry in credit_note.settled_debit_notes
                    ],
                    "updated_by": credit_note.updated_by,
                    "updated_at": credit_note.updated_at,
                }
            }
        )
        if result.matched_count == 0:
            raise PersistenceError(
                f"Credit note {credit_note.credit_note_number} not found while saving"
            )
        return credit_note

    async def get(self, credit_note_id: IdLike, company_id: IdLike) -> Optional[CreditNote]:
        oid = _oid(credit_note_id)
        if oid is None:
            return None

        doc = await self.collection.find_one({"_id": oid, "company_id": _oid(company_id)})
        if doc:
            return CreditNote(**doc)
        return None

    async def list(
        self,
        company_id: IdLike,
        vendor_id: Optional[IdLike] = None,
        site_id: Optional[IdLike] = None,
        po_number: Optional[str] = None
    ) -> List[CreditNote]:
        """List credit notes, newest first."""
        query = {"company_id": _oid(company_id)}
        if vendor_id:
            query["vendor_id"] = _oid(vendor_id)
        if site_id:
            query["site_id"] = _oid(site_id)
        if po_number:
            query["po_number"] = po_number

        docs = await self.collection.find(query).sort("created_at", -1).to_list(None)
        return [CreditNote(**doc) for doc in docs]

    async def find_by_debit_note(self, debit_note_id: ObjectId, company_id: IdLike) -> List[CreditNote]:
        """Credit notes whose settlement history references a debit note."""
        docs = await self.collection.find({
            "company_id": _oid(company_id),
            "settled_debit_notes.debit_note_id": debit_note_id,
        }).to_list(None)
        return [CreditNote(**doc) for doc in docs]
