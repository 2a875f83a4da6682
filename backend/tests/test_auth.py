"""
Authentication and role tests for the server of record.

Verifies:
- Login by username or email; bad credentials rejected
- Logout revokes the bearer token
- Catalog writes are admin-only, reads open to every role
- Cashiers only see their own sales
"""

import pytest

from minimarket.services.auth_service import PasswordValidationError, create_user
from minimarket.validation import ConflictError
from minimarket.time_utils import to_utc_z, utcnow

PASSWORD = "Password123!"


def _login(client, **credentials):
    return client.post("/api/auth/login", json=credentials)


class TestLogin:
    def test_login_by_username(self, client, cashier_user):
        resp = _login(client, username="cashier", password=PASSWORD)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["user"]["role"] == "cashier"
        assert len(body["token"]) == 64

    def test_login_by_email(self, client, cashier_user):
        resp = _login(client, email="CASHIER@minimarket.local", password=PASSWORD)
        assert resp.status_code == 200

    def test_wrong_password(self, client, cashier_user):
        resp = _login(client, username="cashier", password="Wrong123!")
        assert resp.status_code == 401

    def test_missing_fields(self, client):
        assert _login(client, username="cashier").status_code == 400

    def test_token_authenticates_me(self, client, cashier_user):
        token = _login(client, username="cashier", password=PASSWORD).get_json()["token"]

        resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})

        assert resp.status_code == 200
        assert resp.get_json()["user"]["username"] == "cashier"

    def test_logout_revokes_token(self, client, cashier_headers):
        assert client.post("/api/auth/logout", headers=cashier_headers).status_code == 200

        assert client.get("/api/auth/me", headers=cashier_headers).status_code == 401
        assert client.post("/api/auth/logout", headers=cashier_headers).status_code == 401

    def test_garbage_token(self, client):
        resp = client.get("/api/auth/me", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401


class TestAccounts:
    def test_weak_password_rejected(self, app):
        with pytest.raises(PasswordValidationError):
            create_user(username="weak", email="weak@minimarket.local", password="password")

    def test_duplicate_username_rejected(self, app, cashier_user):
        with pytest.raises(ConflictError):
            create_user(username="cashier", email="other@minimarket.local", password=PASSWORD)


class TestProductRoles:
    def test_cashier_cannot_write_catalog(self, client, cashier_headers):
        resp = client.post(
            "/api/products",
            json={"name": "Cola", "code": "BEB001", "price": 2.5},
            headers=cashier_headers,
        )

        assert resp.status_code == 403
        assert resp.get_json()["required_roles"] == ["admin"]

    def test_admin_writes_and_cashier_reads(self, client, admin_headers, cashier_headers):
        created = client.post(
            "/api/products",
            json={"name": "Cola", "code": "BEB001", "price": 2.5, "stock": 45},
            headers=admin_headers,
        ).get_json()

        listing = client.get("/api/products?search=beb", headers=cashier_headers).get_json()

        assert listing["count"] == 1
        assert listing["items"][0]["id"] == created["id"]
        assert listing["items"][0]["price"] == 2.5

    def test_duplicate_code_conflicts(self, client, admin_headers):
        payload = {"name": "Cola", "code": "BEB001", "price": 2.5}
        client.post("/api/products", json=payload, headers=admin_headers)

        resp = client.post("/api/products", json=payload, headers=admin_headers)
        assert resp.status_code == 409

    def test_soft_delete_hides_from_default_listing(self, client, admin_headers):
        created = client.post(
            "/api/products",
            json={"name": "Cola", "code": "BEB001", "price": 2.5},
            headers=admin_headers,
        ).get_json()

        assert client.delete(f"/api/products/{created['id']}", headers=admin_headers).status_code == 200

        assert client.get("/api/products", headers=admin_headers).get_json()["count"] == 0
        everything = client.get("/api/products?active=all", headers=admin_headers).get_json()
        assert everything["items"][0]["active"] is False

    def test_invalid_price(self, client, admin_headers):
        resp = client.post(
            "/api/products",
            json={"name": "Cola", "code": "BEB001", "price": -1},
            headers=admin_headers,
        )
        assert resp.status_code == 400


class TestSalesVisibility:
    def _admin_sale(self, client, admin_headers):
        product = client.post(
            "/api/products",
            json={"name": "Cola", "code": "BEB001", "price": 2.5, "stock": 10},
            headers=admin_headers,
        ).get_json()
        body = client.post(
            "/api/sync/upload",
            json={"sales": [{
                "id": "",
                "localId": "sale-1",
                "saleNumber": "202601010001",
                "paymentMethod": "CASH",
                "status": "COMPLETED",
                "items": [{"productId": product["id"], "quantity": 1, "unitPrice": 2.5}],
                "lastModified": to_utc_z(utcnow()),
                "action": "CREATE",
            }]},
            headers=admin_headers,
        ).get_json()
        return body["results"]["sales"]["items"][0]["serverId"]

    def test_cashier_sees_only_own_sales(self, client, admin_headers, cashier_headers):
        sale_id = self._admin_sale(client, admin_headers)

        assert client.get("/api/sales", headers=cashier_headers).get_json()["count"] == 0
        assert client.get(f"/api/sales/{sale_id}", headers=cashier_headers).status_code == 404

    def test_admin_sees_every_sale(self, client, admin_headers):
        sale_id = self._admin_sale(client, admin_headers)

        listing = client.get("/api/sales", headers=admin_headers).get_json()
        detail = client.get(f"/api/sales/{sale_id}", headers=admin_headers).get_json()

        assert listing["count"] == 1
        assert listing["totalAmount"] == 2.5
        assert detail["sale"]["saleNumber"] == "202601010001"

    def test_bad_date_filter(self, client, admin_headers):
        resp = client.get("/api/sales?date=yesterday", headers=admin_headers)
        assert resp.status_code == 400


def test_health(client, app):
    resp = client.get("/api/health")

    assert resp.status_code == 200
    assert resp.get_json()["checks"]["database"]["status"] == "healthy"
