import os
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from bson import ObjectId
from fastapi.testclient import TestClient
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.main import app
from app.api.deps import get_debit_note_repo, get_credit_note_repo
from app.core.auth import create_access_token
from app.db.mongo import create_indexes
from app.models.credit_note import CreditNote
from app.models.debit_note import DebitNote, DebitNoteStatus
from app.utils.note_validation import ConcurrentModificationError, PersistenceError

# Test database configuration
TEST_MONGODB_URI = os.getenv("MONGODB_URI")
TEST_MONGODB_DB = "procura_test"

T0 = datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc)


class InMemoryDebitNoteRepository:
    """DebitNoteRepository stand-in keeping documents in a dict."""

    def __init__(self):
        self.docs = {}
        self.invoices = []
        self.dmr_entries = []
        self.dmr_orders = []
        self.save_calls = 0

    def add(self, debit_note: DebitNote) -> DebitNote:
        self.docs[debit_note.id] = debit_note.model_copy(deep=True)
        return debit_note

    async def create(self, debit_note):
        return self.add(debit_note)

    async def get(self, debit_note_id, company_id):
        oid = debit_note_id if isinstance(debit_note_id, ObjectId) else (
            ObjectId(debit_note_id) if ObjectId.is_valid(debit_note_id) else None
        )
        doc = self.docs.get(oid)
        if doc is None or str(doc.company_id) != str(company_id):
            return None
        return doc.model_copy(deep=True)

    async def list(self, company_id, site_id=None, vendor_id=None, po_number=None, status=None):
        notes = [
            n for n in self.docs.values()
            if str(n.company_id) == str(company_id)
            and (not site_id or str(n.site_id) == str(site_id))
            and (not vendor_id or str(n.vendor_id) == str(vendor_id))
            and (not po_number or n.po_number == po_number)
            and (not status or n.status == status)
        ]
        notes.sort(key=lambda n: n.created_at, reverse=True)
        return [n.model_copy(deep=True) for n in notes]

    async def find_open(self, company_id, vendor_id, site_id, ids=None):
        wanted = None if ids is None else {str(i) for i in ids}
        notes = [
            n for n in self.docs.values()
            if n.company_id == company_id
            and n.vendor_id == vendor_id
            and n.site_id == site_id
            and n.status != DebitNoteStatus.SETTLED
            and (wanted is None or str(n.id) in wanted)
        ]
        notes.sort(key=lambda n: (n.created_at, n.id))
        return [n.model_copy(deep=True) for n in notes]

    async def save(self, debit_note):
        self.save_calls += 1
        current = self.docs.get(debit_note.id)
        if current is None or current.version != debit_note.version:
            raise ConcurrentModificationError(f"{debit_note.debit_note_number} changed")
        saved = debit_note.model_copy(update={"version": debit_note.version + 1}, deep=True)
        self.docs[debit_note.id] = saved.model_copy(deep=True)
        return saved

    async def latest_for_site(self, site_id, company_id):
        notes = await self.list(company_id, site_id=site_id)
        return notes[0] if notes else None

    async def highest_entry_number(self, site_id, company_id):
        notes = await self.list(company_id, site_id=site_id)
        return max((n.debit_entry_number for n in notes), default=0)

    async def eligible_invoices(self, po_number, company_id):
        return [i for i in self.invoices if i["po_number"] == po_number]

    async def find_dmr_entries(self, dmr_ids, company_id):
        wanted = {str(i) for i in dmr_ids}
        return [
            e for e in self.dmr_entries
            if e["_id"] in wanted and e.get("company_id") == str(company_id)
        ]

    async def find_dmr_order(self, po_number, company_id):
        for order in self.dmr_orders:
            if order["po_number"] == po_number and order.get("company_id") == str(company_id):
                return order
        return None


class InMemoryCreditNoteRepository:
    def __init__(self):
        self.docs = {}
        self.save_calls = 0

    async def create(self, credit_note):
        self.docs[credit_note.id] = credit_note.model_copy(deep=True)
        return credit_note

    async def save(self, credit_note):
        self.save_calls += 1
        if credit_note.id not in self.docs:
            raise PersistenceError("missing")
        self.docs[credit_note.id] = credit_note.model_copy(deep=True)
        return credit_note

    async def get(self, credit_note_id, company_id):
        oid = ObjectId(credit_note_id) if ObjectId.is_valid(str(credit_note_id)) else None
        doc = self.docs.get(oid)
        if doc is None or str(doc.company_id) != str(company_id):
            return None
        return doc.model_copy(deep=True)

    async def list(self, company_id, vendor_id=None, site_id=None, po_number=None):
        return [
            c.model_copy(deep=True) for c in self.docs.values()
            if str(c.company_id) == str(company_id)
            and (not vendor_id or str(c.vendor_id) == str(vendor_id))
            and (not site_id or str(c.site_id) == str(site_id))
            and (not po_number or c.po_number == po_number)
        ]

    async def find_by_debit_note(self, debit_note_id, company_id):
        return [
            c.model_copy(deep=True) for c in self.docs.values()
            if str(c.company_id) == str(company_id)
            and any(e.debit_note_id == debit_note_id for e in c.settled_debit_notes)
        ]


@pytest.fixture
def company_id():
    return ObjectId()


@pytest.fixture
def vendor_id():
    return ObjectId()


@pytest.fixture
def site_id():
    return ObjectId()


@pytest.fixture
def debit_repo():
    return InMemoryDebitNoteRepository()


@pytest.fixture
def credit_repo():
    return InMemoryCreditNoteRepository()


@pytest.fixture
def make_debit_note(debit_repo, company_id, vendor_id, site_id):
    """Store a debit note; created_at defaults to T0 + offset hours."""
    counter = {"n": 0}

    def _make(grand_total_cents, settled_cents=0, hours=None, status=None, **overrides):
        counter["n"] += 1
        if status is None:
            if settled_cents >= grand_total_cents and settled_cents > 0:
                status = DebitNoteStatus.SETTLED
            elif settled_cents > 0:
                status = DebitNoteStatus.PARTIAL
            else:
                status = DebitNoteStatus.RAISED
        fields = dict(
            company_id=company_id,
            vendor_id=vendor_id,
            site_id=site_id,
            debit_note_number=f"DNN_S1_{counter['n']:04d}",
            debit_entry_number=counter["n"],
            po_number="PO-001",
            grand_total_cents=grand_total_cents,
            total_amount_cents=grand_total_cents,
            total_settled_amount_cents=settled_cents,
            status=status,
            created_at=T0 + timedelta(hours=counter["n"] if hours is None else hours),
        )
        fields.update(overrides)
        return debit_repo.add(DebitNote(**fields))

    return _make


@pytest.fixture
def make_credit_note(credit_repo, company_id, vendor_id, site_id):
    """Build and store a fresh credit note with an empty settlement history."""
    def _make(amount_cents, debit_note_ids=None, **overrides):
        fields = dict(
            company_id=company_id,
            vendor_id=vendor_id,
            site_id=site_id,
            credit_note_number="CN-1001",
            credit_note_date=T0,
            credit_note_amount_cents=amount_cents,
            credit_note_doc="credit-notes/cn-1001.pdf",
            po_number="PO-001",
            debit_note_ids=debit_note_ids or [],
        )
        fields.update(overrides)
        credit_note = CreditNote(**fields)
        credit_repo.docs[credit_note.id] = credit_note.model_copy(deep=True)
        return credit_note

    return _make


@pytest.fixture
def dmr_po(debit_repo, company_id, vendor_id, site_id):
    """Two DMR entries of PO-001 plus its DMR order, stored as the repository returns them."""
    entries = [
        {
            "_id": str(ObjectId()),
            "company_id": str(company_id),
            "po_number": "PO-001",
            "site_id": str(site_id),
            "vendor_detail": {"_id": str(vendor_id), "name": "Acme Traders"},
            "invoice_number": "INV-1",
            "items": [
                {"item_id": "I1", "item_name": "Cement", "uom": "bag", "required_qty": 10,
                 "invoice_qty": 10, "received_qty": 8, "debit_qty": 2, "rate_cents": 35050,
                 "gst_percentage": 18},
                {"item_id": "I2", "item_name": "Sand", "debit_qty": 1.5, "rate_cents": 1001,
                 "gst_percentage": 5},
            ],
            "freight_cents": 1500,
            "other_charges_cents": 0,
            "other_debit_amount_cents": 2000,
            "other_debit_gst_percentage": 18,
        },
        {
            "_id": str(ObjectId()),
            "company_id": str(company_id),
            "po_number": "PO-001",
            "site_id": str(site_id),
            "vendor_detail": {"_id": str(vendor_id), "name": "Acme Traders"},
            "invoice_number": "INV-2",
            "items": [
                {"item_id": "I1", "item_name": "Cement", "invoice_qty": 5, "received_qty": 4,
                 "debit_qty": 1, "rate_cents": 35050, "gst_percentage": 18},
            ],
            "freight_cents": 500,
        },
    ]
    order = {
        "_id": str(ObjectId()),
        "company_id": str(company_id),
        "po_number": "PO-001",
        "vendor_detail": {"_id": str(vendor_id), "name": "Acme Traders", "address": "Bengaluru"},
        "billing_address": {"address": "HQ"},
        "delivery_address": {"site_code": "BLR1"},
        "freight_total_cents": 1000,
        "invoice_freight_total_cents": 3000,
        "other_charges_total_cents": 500,
        "invoice_other_charges_total_cents": 500,
    }
    debit_repo.dmr_entries.extend(entries)
    debit_repo.dmr_orders.append(order)
    return [entry["_id"] for entry in entries]


def _mock_collection():
    """Motor collection double: async writes, chainable find cursor."""
    collection = MagicMock()
    collection.insert_one = AsyncMock()
    collection.update_one = AsyncMock()
    collection.find_one = AsyncMock(return_value=None)
    collection.distinct = AsyncMock(return_value=[])
    collection.create_index = AsyncMock()

    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=[])
    collection.find.return_value = cursor
    return collection


@pytest.fixture
def mock_db():
    collections = {}

    def _get(name):
        if name not in collections:
            collections[name] = _mock_collection()
        return collections[name]

    db = MagicMock()
    db.__getitem__.side_effect = _get
    return db

@pytest.fixture
def auth_headers(company_id):
    token = create_access_token(str(ObjectId()), str(company_id))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def test_client(debit_repo, credit_repo):
    """FastAPI test client wired to the in-memory repositories (no lifespan, no MongoDB)."""
    app.dependency_overrides[get_debit_note_repo] = lambda: debit_repo
    app.dependency_overrides[get_credit_note_repo] = lambda: credit_repo
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def test_db() -> AsyncIOMotorDatabase:
    """Fixture for test MongoDB database (for async repository tests)."""
    if not TEST_MONGODB_URI:
        pytest.skip("MONGODB_URI not set")

    client = AsyncIOMotorClient(TEST_MONGODB_URI, tz_aware=True)
    db = client[TEST_MONGODB_DB]

    # Drop database before test to ensure clean state
    await client.drop_database(TEST_MONGODB_DB)
    await create_indexes(db)

    yield db

    await client.drop_database(TEST_MONGODB_DB)
    client.close()
