"""
DebitNoteRepository - persistence for debit notes.

Every write goes through save(), a compare-and-swap on the version field,
so two settlement passes can never both spend the same outstanding amount.
"""

from typing import List, Optional, Iterable, Union
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId

from app.models.debit_note import DebitNote, DebitNoteStatus
from app.utils.note_validation import ConcurrentModificationError

IdLike = Union[str, ObjectId]


def _oid(value: IdLike) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def _stringify_ids(value):
    """ObjectIds at any depth (e.g. vendor_detail._id) as strings."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {key: _stringify_ids(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_stringify_ids(item) for item in value]
    return value


class DebitNoteRepository:
    """Repository for debit notes (claims against vendors)."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["debit_notes"]
        self.dmr_entries = db["dmr_entries"]
        self.dmr_orders = db["dmr_orders"]

    async def create(self, debit_note: DebitNote) -> DebitNote:
        """Insert a new debit note."""
        await self.collection.insert_one(debit_note.to_document())
        return debit_note

    async def get(self, debit_note_id: IdLike, company_id: IdLike) -> Optional[DebitNote]:
        """Get a debit note by id within a company."""
        oid = _oid(debit_note_id)
        if oid is None:
            return None

        doc = await self.collection.find_one({"_id": oid, "company_id": _oid(company_id)})
        if doc:
            return DebitNote(**doc)
        return None

    async def list(
        self,
        company_id: IdLike,
        site_id: Optional[IdLike] = None,
        vendor_id: Optional[IdLike] = None,
        po_number: Optional[str] = None,
        status: Optional[DebitNoteStatus] = None
    ) -> List[DebitNote]:
        """List debit notes, newest first."""
        query = {"company_id": _oid(company_id)}
        if site_id:
            query["site_id"] = _oid(site_id)
        if vendor_id:
            query["vendor_id"] = _oid(vendor_id)
        if po_number:
            query["po_number"] = po_number
        if status:
            query["status"] = DebitNoteStatus(status).value

        docs = await self.collection.find(query).sort("created_at", -1).to_list(None)
        return [DebitNote(**doc) for doc in docs]

    async def find_open(
        self,
        company_id: IdLike,
        vendor_id: IdLike,
        site_id: IdLike,
        ids: Optional[Iterable[IdLike]] = None
    ) -> List[DebitNote]:
        """
        Non-settled debit notes for a vendor+site, oldest first.

        With ids, only those debit notes are considered; invalid ids are ignored.
        """
        query = {
            "company_id": _oid(company_id),
            "vendor_id": _oid(vendor_id),
            "site_id": _oid(site_id),
            "status": {"$ne": DebitNoteStatus.SETTLED.value},
        }
        if ids is not None:
            query["_id"] = {"$in": [oid for oid in (_oid(i) for i in ids) if oid is not None]}

        cursor = self.collection.find(query).sort([("created_at", 1), ("_id", 1)])
        docs = await cursor.to_list(None)
        return [DebitNote(**doc) for doc in docs]

    async def save(self, debit_note: DebitNote) -> DebitNote:
        """
        Write the whole document if nobody else has since its version was read.

        Returns the note with its new version.
        Raises ConcurrentModificationError when the version check fails.
        """
        saved = debit_note.model_copy(update={"version": debit_note.version + 1})
        doc = saved.to_document()
        doc.pop("_id")

        result = await self.collection.update_one(
            {
                "_id": debit_note.id,
                "company_id": debit_note.company_id,
                "version": debit_note.version,
            },
            {"$set": doc}
        )
        if result.matched_count == 0:
            raise ConcurrentModificationError(
                f"Debit note {debit_note.debit_note_number} was modified concurrently"
            )
        return saved

    async def latest_for_site(self, site_id: IdLike, company_id: IdLike) -> Optional[DebitNote]:
        """Most recently created debit note of a site."""
        docs = await self.collection.find({
            "site_id": _oid(site_id),
            "company_id": _oid(company_id),
        }).sort("created_at", -1).limit(1).to_list(1)
        if docs:
            return DebitNote(**docs[0])
        return None

    async def highest_entry_number(self, site_id: IdLike, company_id: IdLike) -> int:
        """Highest debit_entry_number used on a site, 0 if none."""
        doc = await self.collection.find_one(
            {"site_id": _oid(site_id), "company_id": _oid(company_id)},
            sort=[("debit_entry_number", -1)],
            projection={"debit_entry_number": 1}
        )
        return doc["debit_entry_number"] if doc else 0

    async def eligible_invoices(self, po_number: str, company_id: IdLike) -> List[dict]:
        """
        Invoice DMR entries of a PO that no debit note references yet.
        """
        used = await self.collection.distinct(
            "dmr_entries",
            {"po_number": po_number, "company_id": _oid(company_id)}
        )
        cursor = self.dmr_entries.find(
            {
                "po_number": po_number,
                "entry_type": "InvoiceNumber",
                "_id": {"$nin": used or []},
                "company_id": _oid(company_id),
            },
            projection={
                "invoice_number": 1,
                "po_number": 1,
                "invoice_date": 1,
                "vendor_detail": 1,
                "vendor_invoice_total": 1,
                "dmr_no": 1,
            }
        )
        docs = await cursor.to_list(None)
        return [_stringify_ids(doc) for doc in docs]

    async def find_dmr_entries(self, dmr_ids: Iterable[IdLike], company_id: IdLike) -> List[dict]:
        """DMR entries by id within a company, in the order they were received."""
        oids = [oid for oid in (_oid(i) for i in dmr_ids) if oid is not None]
        if not oids:
            return []

        cursor = self.dmr_entries.find(
            {"_id": {"$in": oids}, "company_id": _oid(company_id)}
        ).sort("created_at", 1)
        docs = await cursor.to_list(None)
        return [_stringify_ids(doc) for doc in docs]

    async def find_dmr_order(self, po_number: str, company_id: IdLike) -> Optional[dict]:
        """The DMR purchase order snapshot (vendor, addresses, freight totals) of a PO."""
        doc = await self.dmr_orders.find_one(
            {"po_number": po_number, "company_id": _oid(company_id)}
        )
        return _stringify_ids(doc) if doc else None
