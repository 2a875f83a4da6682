"""
Server sync endpoint tests (/api/sync/upload, /api/sync/download).

Verifies:
- Authentication is required
- Items are applied one by one; one bad item never sinks the batch
- Natural-key and stale-write collisions come back as conflicts
- Replayed CREATEs are acknowledged without duplicating rows
- Stock on the server of record never goes negative
- Downloads are incremental from the checkpoint
"""

from datetime import timedelta

import pytest

from minimarket.extensions import db
from minimarket.models import Product, Sale, SyncEvent
from minimarket.time_utils import to_utc_z, utcnow


def _product_item(code, *, local_id=None, action="CREATE", **extra):
    return {
        "id": "",
        "localId": local_id or f"local-{code}",
        "name": f"Product {code}",
        "code": code,
        "price": 2.5,
        "stock": 10,
        "lastModified": to_utc_z(utcnow()),
        "action": action,
        **extra,
    }


def _sale_item(number, product_id, quantity, *, local_id=None, **extra):
    return {
        "id": "",
        "localId": local_id or f"sale-{number}",
        "saleNumber": number,
        "paymentMethod": "CASH",
        "status": "COMPLETED",
        "items": [{"productId": str(product_id), "quantity": quantity, "unitPrice": 2.5}],
        "lastModified": to_utc_z(utcnow()),
        "action": "CREATE",
        **extra,
    }


def _upload(client, headers, **buckets):
    resp = client.post("/api/sync/upload", json=buckets, headers=headers)
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()


def _server_product(client, headers, code, stock=10):
    resp = client.post(
        "/api/products",
        json={"name": f"Server {code}", "code": code, "price": 1, "stock": stock},
        headers=headers,
    )
    assert resp.status_code == 201
    return resp.get_json()


class TestAuth:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("POST", "/api/sync/upload"),
            ("GET", "/api/sync/download"),
            ("POST", "/api/sync/download"),
        ],
    )
    def test_requires_auth(self, client, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401

    def test_malformed_envelope(self, client, cashier_headers):
        resp = client.post("/api/sync/upload", json={"products": {"not": "a list"}}, headers=cashier_headers)
        assert resp.status_code == 400
        assert resp.get_json()["success"] is False


class TestUploadProducts:
    def test_round_trip_creates_every_product(self, client, cashier_headers):
        items = [_product_item(f"P{i}") for i in range(5)]

        body = _upload(client, cashier_headers, products=items)

        products = body["results"]["products"]
        assert products["processed"] == 5
        assert products["conflicts"] == []
        assert {i["localId"] for i in products["items"]} == {i["localId"] for i in items}
        assert all(i["serverId"] for i in products["items"])
        codes = {p.code for p in db.session.query(Product).all()}
        assert codes == {f"P{i}" for i in range(5)}

    def test_existing_code_is_one_conflict(self, client, admin_headers, cashier_headers):
        server = _server_product(client, admin_headers, "X1")

        body = _upload(client, cashier_headers, products=[_product_item("X1"), _product_item("X2")])

        products = body["results"]["products"]
        assert products["processed"] == 1
        assert len(products["conflicts"]) == 1
        conflict = products["conflicts"][0]
        assert conflict["localId"] == "local-X1"
        assert conflict["reason"] == "Product code already exists"
        assert conflict["serverId"] == server["id"]
        assert conflict["serverData"]["name"] == "Server X1"
        assert db.session.query(Product).filter_by(code="X1").count() == 1

    def test_failing_item_is_isolated(self, client, cashier_headers):
        items = [_product_item(f"P{i}") for i in range(5)]
        items[2]["price"] = "not-a-number"

        body = _upload(client, cashier_headers, products=items)

        products = body["results"]["products"]
        assert products["processed"] == 4
        assert products["errors"] == 1
        failed = [i for i in products["items"] if i["status"] == "error"]
        assert [i["localId"] for i in failed] == ["local-P2"]
        assert db.session.query(Product).count() == 4

    def test_replayed_create_is_acknowledged_again(self, client, cashier_headers):
        first = _upload(client, cashier_headers, products=[_product_item("R1")])
        second = _upload(client, cashier_headers, products=[_product_item("R1")])

        first_id = first["results"]["products"]["items"][0]["serverId"]
        assert second["results"]["products"]["processed"] == 1
        assert second["results"]["products"]["items"][0]["serverId"] == first_id
        assert db.session.query(Product).count() == 1

    def test_stale_update_conflicts(self, client, admin_headers, cashier_headers):
        server = _server_product(client, admin_headers, "S1")
        stale = to_utc_z(utcnow() - timedelta(hours=1))

        body = _upload(client, cashier_headers, products=[
            _product_item("S1", action="UPDATE", id=server["id"], lastModified=stale, name="Old edit"),
        ])

        conflicts = body["results"]["products"]["conflicts"]
        assert [c["reason"] for c in conflicts] == ["Server version is newer"]
        assert conflicts[0]["clientData"]["name"] == "Old edit"
        assert db.session.get(Product, int(server["id"])).name == "Server S1"

    def test_newer_update_is_applied(self, client, admin_headers, cashier_headers):
        server = _server_product(client, admin_headers, "S1")
        newer = to_utc_z(utcnow() + timedelta(seconds=5))

        body = _upload(client, cashier_headers, products=[
            _product_item("S1", action="UPDATE", id=server["id"], lastModified=newer, name="Device edit"),
        ])

        assert body["results"]["products"]["processed"] == 1
        assert db.session.get(Product, int(server["id"])).name == "Device edit"

    def test_delete_is_soft_and_idempotent(self, client, admin_headers, cashier_headers):
        server = _server_product(client, admin_headers, "D1")

        body = _upload(client, cashier_headers, products=[
            _product_item("D1", action="DELETE", id=server["id"]),
            _product_item("D2", action="DELETE", id="999"),
        ])

        assert body["results"]["products"]["processed"] == 2
        assert db.session.get(Product, int(server["id"])).active is False

    def test_update_of_unknown_product_conflicts(self, client, cashier_headers):
        body = _upload(client, cashier_headers, products=[_product_item("U1", action="UPDATE", id="404")])

        assert body["results"]["products"]["conflicts"][0]["reason"] == "Product not found on server"


class TestUploadSales:
    def test_sale_decrements_stock(self, client, admin_headers, cashier_headers, cashier_user):
        product = _server_product(client, admin_headers, "BEB001", stock=45)

        body = _upload(client, cashier_headers, sales=[_sale_item("202601010001", product["id"], 3)])

        assert body["results"]["sales"]["processed"] == 1
        assert db.session.get(Product, int(product["id"])).stock == 42
        sale = db.session.query(Sale).one()
        assert sale.user_id == cashier_user.id
        assert sale.total_cents == 750

    def test_stock_never_negative(self, client, admin_headers, cashier_headers):
        product = _server_product(client, admin_headers, "LOW", stock=2)

        _upload(client, cashier_headers, sales=[_sale_item("202601010001", product["id"], 5)])

        assert db.session.get(Product, int(product["id"])).stock == 0

    def test_sale_resolves_product_created_in_same_batch(self, client, cashier_headers):
        sale = _sale_item("202601010001", "", 1)
        sale["items"][0]["productCode"] = "NEW1"

        body = _upload(client, cashier_headers, products=[_product_item("NEW1")], sales=[sale])

        assert body["results"]["sales"]["processed"] == 1
        assert db.session.query(Product).filter_by(code="NEW1").one().stock == 9

    def test_sale_number_taken_conflicts(self, client, admin_headers, cashier_headers):
        product = _server_product(client, admin_headers, "P1")
        _upload(client, cashier_headers, sales=[_sale_item("202601010001", product["id"], 1, local_id="a")])

        body = _upload(client, cashier_headers, sales=[
            _sale_item("202601010001", product["id"], 1, local_id="b"),
        ])

        conflicts = body["results"]["sales"]["conflicts"]
        assert [c["reason"] for c in conflicts] == ["Sale number already exists"]
        assert db.session.query(Sale).count() == 1
        assert db.session.get(Product, int(product["id"])).stock == 9

    def test_declared_total_must_reconcile(self, client, admin_headers, cashier_headers):
        product = _server_product(client, admin_headers, "P1")

        body = _upload(client, cashier_headers, sales=[
            _sale_item("202601010001", product["id"], 2, total=4.0),
        ])

        assert body["results"]["sales"]["errors"] == 1
        assert db.session.query(Sale).count() == 0

    def test_cancel_restores_stock(self, client, admin_headers, cashier_headers):
        product = _server_product(client, admin_headers, "P1", stock=10)
        created = _upload(client, cashier_headers, sales=[_sale_item("202601010001", product["id"], 4)])
        sale_id = created["results"]["sales"]["items"][0]["serverId"]

        cancel = {
            "id": sale_id,
            "localId": "sale-202601010001",
            "status": "CANCELLED",
            "lastModified": to_utc_z(utcnow() + timedelta(seconds=5)),
            "action": "UPDATE",
        }
        _upload(client, cashier_headers, sales=[cancel])
        _upload(client, cashier_headers, sales=[dict(cancel, lastModified=to_utc_z(utcnow() + timedelta(seconds=10)))])

        assert db.session.get(Product, int(product["id"])).stock == 10
        assert db.session.get(Sale, int(sale_id)).status == "CANCELLED"

    def test_cash_session_create_and_close(self, client, cashier_headers):
        session_item = {
            "id": "",
            "localId": "cs-1",
            "startAmount": 100,
            "status": "OPEN",
            "openedAt": to_utc_z(utcnow()),
            "lastModified": to_utc_z(utcnow()),
            "action": "CREATE",
        }
        created = _upload(client, cashier_headers, cashSessions=[session_item])
        server_id = created["results"]["cashSessions"]["items"][0]["serverId"]

        closed = _upload(client, cashier_headers, cashSessions=[dict(
            session_item,
            id=server_id,
            action="UPDATE",
            status="CLOSED",
            endAmount=150,
            lastModified=to_utc_z(utcnow() + timedelta(seconds=5)),
        )])

        assert closed["results"]["cashSessions"]["processed"] == 1

    def test_upload_is_audited(self, client, cashier_headers, cashier_user):
        _upload(client, cashier_headers, products=[_product_item("A1")])

        event = db.session.query(SyncEvent).one()
        assert event.user_id == cashier_user.id
        assert event.direction == "upload"
        assert event.processed == 1


class TestDownload:
    def test_full_then_incremental(self, client, admin_headers, cashier_headers):
        _server_product(client, admin_headers, "P1")
        _server_product(client, admin_headers, "P2")

        first = client.get("/api/sync/download", headers=cashier_headers).get_json()
        assert first["success"] is True
        assert [p["code"] for p in first["data"]["products"]] == ["P1", "P2"]
        assert first["statistics"]["productsCount"] == 2

        checkpoint = first["data"]["syncTimestamp"]
        second = client.get(
            "/api/sync/download",
            query_string={"lastSyncTimestamp": checkpoint},
            headers=cashier_headers,
        ).get_json()
        assert second["data"]["products"] == []
        assert second["statistics"]["lastSyncTimestamp"] == checkpoint

    def test_include_flags(self, client, admin_headers, cashier_headers):
        product = _server_product(client, admin_headers, "P1")
        _upload(client, cashier_headers, sales=[_sale_item("202601010001", product["id"], 1)])

        body = client.post(
            "/api/sync/download",
            json={"includeProducts": False, "includeSales": True},
            headers=cashier_headers,
        ).get_json()

        assert body["data"]["products"] == []
        assert [s["saleNumber"] for s in body["data"]["sales"]] == ["202601010001"]

    def test_own_sales_only(self, client, admin_headers, cashier_headers):
        product = _server_product(client, admin_headers, "P1")
        _upload(client, cashier_headers, sales=[_sale_item("202601010001", product["id"], 1)])

        mine = client.get(
            "/api/sync/download",
            query_string={"includeOwnSalesOnly": "true"},
            headers=admin_headers,
        ).get_json()

        assert mine["data"]["sales"] == []

    def test_deleted_products_are_included(self, client, admin_headers, cashier_headers):
        product = _server_product(client, admin_headers, "P1")
        client.delete(f"/api/products/{product['id']}", headers=admin_headers)

        body = client.get("/api/sync/download", headers=cashier_headers).get_json()

        assert [p["active"] for p in body["data"]["products"]] == [False]

    def test_bad_checkpoint(self, client, cashier_headers):
        resp = client.get(
            "/api/sync/download",
            query_string={"lastSyncTimestamp": "yesterday"},
            headers=cashier_headers,
        )
        assert resp.status_code == 400
