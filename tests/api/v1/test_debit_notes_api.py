from unittest.mock import AsyncMock, patch

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from app.api.deps import get_debit_note_repo
from app.main import app
from app.repositories.debit_note_repo import DebitNoteRepository


def _body(vendor_id, site_id, **overrides):
    body = {
        "po_number": "PO-001",
        "vendor_id": str(vendor_id),
        "site_id": str(site_id),
        "dmr_entries": [str(ObjectId())],
        "delivery_address": {"site_code": "HYD2"},
        "items": [
            {"item_name": "Cement", "debit_qty": 4, "rate_cents": 25000,
             "amount_cents": 100000, "gst_percentage": 18, "gst_cents": 18000}
        ],
        "additional_debits": [{"type": "Freight", "amount_cents": 2000}],
    }
    body.update(overrides)
    return body


def test_create_debit_note(test_client, auth_headers, vendor_id, site_id):
    response = test_client.post(
        "/api/v1/debit-notes", json=_body(vendor_id, site_id), headers=auth_headers
    )

    assert response.status_code == 201
    data = response.json()
    assert data["debit_note_number"] == "DNN_HYD2_0001"
    assert data["grand_total_cents"] == 120000
    assert data["outstanding_amount_cents"] == 120000
    assert data["status"] == "raised"
    assert data["credit_notes"] == []


def test_create_debit_note_requires_dmr_entries(test_client, auth_headers, vendor_id, site_id):
    response = test_client.post(
        "/api/v1/debit-notes", json=_body(vendor_id, site_id, dmr_entries=[]), headers=auth_headers
    )

    assert response.status_code == 422


def test_create_debit_note_negative_line(test_client, auth_headers, vendor_id, site_id):
    response = test_client.post(
        "/api/v1/debit-notes",
        json=_body(vendor_id, site_id, items=[{"item_name": "Steel", "amount_cents": -5}]),
        headers=auth_headers,
    )

    assert response.status_code == 400


def test_list_debit_notes_filters_by_status(test_client, auth_headers, make_debit_note):
    open_note = make_debit_note(1000)
    make_debit_note(1000, settled_cents=1000)

    response = test_client.get(
        "/api/v1/debit-notes", params={"status": "raised"}, headers=auth_headers
    )

    assert response.status_code == 200
    assert [d["id"] for d in response.json()] == [str(open_note.id)]


def test_get_debit_note_not_found(test_client, auth_headers):
    response = test_client.get(f"/api/v1/debit-notes/{ObjectId()}", headers=auth_headers)

    assert response.status_code == 404
    assert response.json()["detail"] == "Debit note not found"


def test_get_debit_note_of_other_company(test_client, make_debit_note):
    from app.core.auth import create_access_token

    debit_note = make_debit_note(1000)
    token = create_access_token(str(ObjectId()), str(ObjectId()))

    response = test_client.get(
        f"/api/v1/debit-notes/{debit_note.id}",
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 404


def test_update_debit_note(test_client, auth_headers, make_debit_note):
    debit_note = make_debit_note(1000, settled_cents=400)

    response = test_client.put(
        f"/api/v1/debit-notes/{debit_note.id}",
        json={"items": [{"item_name": "Pipe", "amount_cents": 800}], "remarks": "Revised"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["grand_total_cents"] == 800
    assert data["outstanding_amount_cents"] == 400
    assert data["status"] == "partial"
    assert data["remarks"] == "Revised"


def test_update_debit_note_below_settled(test_client, auth_headers, make_debit_note):
    debit_note = make_debit_note(1000, settled_cents=400)

    response = test_client.put(
        f"/api/v1/debit-notes/{debit_note.id}",
        json={"items": [{"item_name": "Pipe", "amount_cents": 100}]},
        headers=auth_headers,
    )

    assert response.status_code == 400


def test_mark_sent(test_client, auth_headers, make_debit_note):
    debit_note = make_debit_note(1000)

    response = test_client.post(f"/api/v1/debit-notes/{debit_note.id}/sent", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "sent"
    assert response.json()["vendor_status"]["emailed"] is True


def test_next_number(test_client, auth_headers, site_id, make_debit_note):
    make_debit_note(1000, debit_note_number="DN-2026-2027-0012")

    response = test_client.get(f"/api/v1/debit-notes/next-number/{site_id}", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["debit_note_number"].endswith("-0013")


def test_open_invoices(test_client, auth_headers, debit_repo):
    debit_repo.invoices = [{"_id": "abc", "po_number": "PO-001", "invoice_number": "INV-1"}]

    response = test_client.get(
        "/api/v1/debit-notes/open-invoices", params={"po_number": "PO-001"}, headers=auth_headers
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "data": debit_repo.invoices}

    response = test_client.get("/api/v1/debit-notes/open-invoices", headers=auth_headers)
    assert response.status_code == 400


def test_reconciliation_after_credit_note(
    test_client, auth_headers, vendor_id, site_id, make_debit_note
):
    debit_note = make_debit_note(1000)
    test_client.post(
        "/api/v1/credit-notes",
        json={
            "credit_note_number": "CN-9",
            "credit_note_date": "2026-05-02T00:00:00Z",
            "credit_note_amount_cents": 1200,
            "credit_note_doc": "cn-9.pdf",
            "po_number": "PO-001",
            "vendor_id": str(vendor_id),
            "site_id": str(site_id),
        },
        headers=auth_headers,
    )

    response = test_client.get(
        f"/api/v1/debit-notes/{debit_note.id}/reconciliation", headers=auth_headers
    )

    assert response.status_code == 200
    data = response.json()
    assert data["is_consistent"] is True
    assert data["total_settled_amount_cents"] == 1000

    detail = test_client.get(f"/api/v1/debit-notes/{debit_note.id}", headers=auth_headers).json()
    assert detail["status"] == "settled"
    assert detail["credit_notes"][0]["credit_note_number"] == "CN-9"


def test_open_invoices_with_nested_object_ids(test_client, auth_headers, mock_db):
    invoice_id, vendor_id = ObjectId(), ObjectId()
    mock_db["dmr_entries"].find.return_value.to_list.return_value = [
        {"_id": invoice_id, "po_number": "PO-1", "vendor_detail": {"_id": vendor_id, "name": "Acme"}}
    ]
    app.dependency_overrides[get_debit_note_repo] = lambda: DebitNoteRepository(mock_db)

    response = test_client.get(
        "/api/v1/debit-notes/open-invoices", params={"po_number": "PO-1"}, headers=auth_headers
    )

    assert response.status_code == 200
    invoice = response.json()["data"][0]
    assert invoice["_id"] == str(invoice_id)
    assert invoice["vendor_detail"] == {"_id": str(vendor_id), "name": "Acme"}


def test_draft_from_dmr(test_client, auth_headers, dmr_po):
    response = test_client.get(
        "/api/v1/debit-notes/from-dmr", params={"dmr_ids": ",".join(dmr_po)}, headers=auth_headers
    )

    assert response.status_code == 200
    data = response.json()
    assert data["debit_note_number"] == "DNN_BLR1_0001"
    assert data["grand_total_cents"] == 130014
    assert [item["item_name"] for item in data["items"]] == ["Cement", "Sand", "Freight"]
    assert data["additional_debits"][0]["type"] == "Rate Difference"


def test_draft_posts_back_as_debit_note(test_client, auth_headers, dmr_po):
    draft = test_client.get(
        "/api/v1/debit-notes/from-dmr", params={"dmr_ids": ",".join(dmr_po)}, headers=auth_headers
    ).json()

    response = test_client.post("/api/v1/debit-notes", json=draft, headers=auth_headers)

    assert response.status_code == 201
    assert response.json()["debit_note_number"] == draft["debit_note_number"]
    assert response.json()["grand_total_cents"] == draft["grand_total_cents"]


def test_draft_from_dmr_errors(test_client, auth_headers, dmr_po):
    response = test_client.get("/api/v1/debit-notes/from-dmr", headers=auth_headers)
    assert response.status_code == 400

    response = test_client.get(
        "/api/v1/debit-notes/from-dmr", params={"dmr_ids": str(ObjectId())}, headers=auth_headers
    )
    assert response.status_code == 404
    assert response.json()["detail"] == "No DMR entries found"


def test_create_debit_note_duplicate_entry_number(test_client, auth_headers, vendor_id, site_id):
    with patch(
        "app.services.debit_note_service.DebitNoteService.create", new_callable=AsyncMock
    ) as mock_create:
        mock_create.side_effect = DuplicateKeyError("E11000 duplicate key error")

        response = test_client.post(
            "/api/v1/debit-notes", json=_body(vendor_id, site_id), headers=auth_headers
        )

    assert response.status_code == 409
