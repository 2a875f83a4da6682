"""
Offline LocalStore tests.

Verifies:
- Mutations and their sync queue entries commit together
- Stock never goes negative; sales reconcile their totals
- Sale numbers are unique per day
- Queue coalescing, backoff and dead-lettering
- Download merges are idempotent
"""

import warnings
from datetime import timedelta

import pytest
from sqlalchemy.exc import SAWarning

from minimarket.offline.errors import InsufficientStockError
from minimarket.time_utils import day_prefix, utcnow
from minimarket.validation import ConflictError, ValidationError


def _product(store, code="BEB001", *, price=2.50, stock=45, **extra):
    return store.create_product({"name": f"Product {code}", "code": code, "price": price, "stock": stock, **extra})


def _sell(store, product, quantity, **extra):
    return store.create_sale({
        "paymentMethod": "CASH",
        "items": [{"productId": product["localId"], "quantity": quantity}],
        **extra,
    })


def _entries(store, entity_type):
    return [c for c in store.pending_changes() if c.entity_type == entity_type]


# =============================================================================
# PRODUCTS
# =============================================================================


class TestProducts:
    def test_create_queues_snapshot(self, store):
        product = _product(store)

        assert product["id"] == ""
        assert product["synced"] is False
        assert product["action"] == "CREATE"
        assert product["price"] == 2.5

        changes = _entries(store, "product")
        assert len(changes) == 1
        assert changes[0].action == "CREATE"
        assert changes[0].payload["code"] == "BEB001"
        assert changes[0].payload["localId"] == product["localId"]

    def test_invalid_payload_is_never_queued(self, store):
        with pytest.raises(ValidationError):
            store.create_product({"name": "No price", "code": "NP1"})
        with pytest.raises(ValidationError):
            store.create_product({"name": "Negative", "code": "NEG", "price": 1, "stock": -1})

        assert store.pending_changes() == []
        assert store.list_products() == []

    def test_duplicate_active_code_rejected(self, store):
        _product(store, "X1")
        with pytest.raises(ConflictError):
            _product(store, "X1")
        assert len(store.list_products()) == 1

    def test_code_reusable_after_delete(self, store):
        first = _product(store, "X1")
        store.delete_product(first["localId"])

        second = _product(store, "X1")

        assert second["localId"] != first["localId"]
        assert store.get_product_by_code("X1")["localId"] == second["localId"]

    def test_update_and_create_coalesce_into_one_create(self, store):
        product = _product(store)
        store.update_product(product["localId"], {"price": 3})

        changes = _entries(store, "product")
        assert len(changes) == 1
        assert changes[0].action == "CREATE"
        assert changes[0].payload["price"] == 3.0
        assert len(changes[0].entry_ids) == 2

    def test_adjust_stock_cannot_go_negative(self, store):
        product = _product(store, stock=2)
        with pytest.raises(InsufficientStockError):
            store.adjust_stock(product["localId"], -3)
        assert store.get_product(product["localId"])["stock"] == 2

        assert store.adjust_stock(product["localId"], 5, reason="delivery")["stock"] == 7

    def test_list_filters(self, store):
        _product(store, "A1", name="Apple juice", category="Drinks", minStock=10, stock=5)
        _product(store, "B1", name="Bread", category="Bakery", stock=50)

        assert [p["code"] for p in store.list_products(category="Drinks")] == ["A1"]
        assert [p["code"] for p in store.list_products(search="brea")] == ["B1"]
        assert [p["code"] for p in store.list_products(low_stock=True)] == ["A1"]


# =============================================================================
# SALES
# =============================================================================


class TestSales:
    def test_sale_decrements_stock_and_queues_sale(self, store):
        product = _product(store, price=2.50, stock=45)

        sale = _sell(store, product, 3)

        assert store.get_product(product["localId"])["stock"] == 42
        assert sale["total"] == 7.5
        sales = _entries(store, "sale")
        assert len(sales) == 1
        assert len(sales[0].payload["items"]) == 1
        assert sales[0].payload["items"][0]["productCode"] == "BEB001"

    def test_insufficient_stock_aborts_whole_sale(self, store):
        a = _product(store, "A1", stock=5)
        b = _product(store, "B1", stock=1)

        with pytest.raises(InsufficientStockError) as exc_info:
            store.create_sale({
                "paymentMethod": "CASH",
                "items": [
                    {"productId": a["localId"], "quantity": 2},
                    {"productId": b["localId"], "quantity": 2},
                ],
            })

        assert [s["code"] for s in exc_info.value.shortages] == ["B1"]
        assert store.get_product(a["localId"])["stock"] == 5
        assert store.get_product(b["localId"])["stock"] == 1
        assert store.list_sales() == []
        assert _entries(store, "sale") == []

    def test_repeated_lines_are_checked_together(self, store):
        product = _product(store, stock=3)
        with pytest.raises(InsufficientStockError):
            store.create_sale({
                "paymentMethod": "CARD",
                "items": [
                    {"productId": product["localId"], "quantity": 2},
                    {"productId": product["localId"], "quantity": 2},
                ],
            })
        assert store.get_product(product["localId"])["stock"] == 3

    def test_totals_reconcile(self, store):
        product = _product(store, price=10, stock=10)

        sale = store.create_sale({
            "paymentMethod": "CASH",
            "discount": 1.5,
            "tax": 2.25,
            "items": [{"productId": product["localId"], "quantity": 3, "discount": 0.5}],
        })

        assert sale["subtotal"] == 29.5
        assert sale["total"] == 29.5 - 1.5 + 2.25
        assert sum(i["subtotal"] for i in sale["items"]) == sale["subtotal"]

    def test_declared_total_must_reconcile(self, store):
        product = _product(store, price=10, stock=10)
        with pytest.raises(ValidationError):
            _sell(store, product, 1, total=9.99)
        assert store.get_product(product["localId"])["stock"] == 10

    def test_sale_numbers_unique_within_day(self, store):
        numbers = [store.generate_sale_number() for _ in range(50)]

        assert len(set(numbers)) == 50
        prefix = day_prefix(utcnow())
        assert all(n.startswith(prefix) and len(n) == 12 for n in numbers)

    def test_sale_number_skips_reserved_numbers(self, store):
        product = _product(store, stock=10)
        reserved = store.generate_sale_number()

        sale = _sell(store, product, 1)

        assert sale["saleNumber"] > reserved

    def test_cancel_restores_stock_once(self, store):
        product = _product(store, stock=10)
        sale = _sell(store, product, 4)

        store.update_sale(sale["localId"], status="CANCELLED")
        store.update_sale(sale["localId"], notes="customer changed mind")

        assert store.get_product(product["localId"])["stock"] == 10
        with pytest.raises(ValidationError):
            store.update_sale(sale["localId"], status="COMPLETED")

    def test_sale_joins_open_cash_session(self, store):
        product = _product(store, price=5, stock=10)
        cash_session = store.open_cash_session(1, 100)

        _sell(store, product, 2, userId=1)
        stats = store.cash_session_stats(cash_session["localId"])

        assert stats["salesCount"] == 1
        assert stats["expectedCashCents"] == 10000 + 1000

        closed = store.close_cash_session(cash_session["localId"], 110)
        assert closed["status"] == "CLOSED"
        assert closed["totalSales"] == 10.0

    def test_daily_stats(self, store):
        product = _product(store, price=2, stock=10)
        _sell(store, product, 1)
        cancelled = _sell(store, product, 2)
        store.update_sale(cancelled["localId"], status="CANCELLED")

        stats = store.daily_stats()

        assert stats["salesCount"] == 1
        assert stats["totalCents"] == 200
        assert stats["cancelledCount"] == 1


# =============================================================================
# QUEUE
# =============================================================================


class TestQueue:
    def test_backoff_then_dead_letter(self, store):
        product = _product(store)
        change = store.pending_changes()[0]
        now = utcnow()

        dead = store.mark_failed(change.entry_ids, "boom", max_retries=3, backoff_base=10,
                                 backoff_max=15, now=now)
        assert dead == 0
        assert store.pending_changes(now) == []
        assert len(store.pending_changes(now + timedelta(seconds=10))) == 1

        store.mark_failed(change.entry_ids, "boom", max_retries=3, backoff_base=10, backoff_max=15, now=now)
        assert store.pending_changes(now + timedelta(seconds=14)) == []
        assert len(store.pending_changes(now + timedelta(seconds=15))) == 1

        dead = store.mark_failed(change.entry_ids, "boom", max_retries=3, backoff_base=10,
                                 backoff_max=15, now=now)
        assert dead == 1
        assert store.pending_changes(now + timedelta(days=1)) == []
        assert store.queue_stats()["dead"] == 1

        assert store.retry_dead("product") == 1
        retried = store.pending_changes()
        assert [c.entity_id for c in retried] == [product["localId"]]
        assert retried[0].retries == 0

    def test_acknowledge_links_server_id(self, store):
        product = _product(store)
        change = store.pending_changes()[0]

        store.acknowledge("product", product["localId"], change.entry_ids, "17")

        synced = store.get_product(product["localId"])
        assert synced["id"] == "17"
        assert synced["synced"] is True
        assert synced["action"] is None
        assert store.get_product("17")["localId"] == product["localId"]
        assert store.pending_changes() == []

    def test_edit_during_upload_stays_unsynced(self, store):
        product = _product(store)
        change = store.pending_changes()[0]
        store.update_product(product["localId"], {"name": "Renamed"})

        store.acknowledge("product", product["localId"], change.entry_ids, "17")

        assert store.get_product(product["localId"])["synced"] is False
        remaining = store.pending_changes()
        assert len(remaining) == 1
        assert remaining[0].action == "UPDATE"
        assert remaining[0].payload["id"] == "17"

    def test_conflict_holds_entity_until_resolved(self, store):
        product = _product(store, "X1")
        change = store.pending_changes()[0]
        store.mark_conflict(change.entry_ids, {"reason": "Product code already exists", "serverId": "5"})
        store.update_product(product["localId"], {"price": 4})

        assert store.pending_changes() == []
        conflicts = store.list_conflicts()
        assert len(conflicts) == 1
        assert conflicts[0]["serverId"] == "5"

        store.resolve_conflict("product", product["localId"], keep="local")

        assert store.list_conflicts() == []
        requeued = store.pending_changes()
        assert len(requeued) == 1
        assert requeued[0].action == "UPDATE"
        assert requeued[0].payload["id"] == "5"

    def test_requeued_entry_gets_a_fresh_queue_id(self, store):
        product = _product(store, "X1")
        change = store.pending_changes()[0]
        store.mark_conflict(change.entry_ids, {"reason": "Product code already exists", "serverId": "5"})

        with warnings.catch_warnings():
            warnings.simplefilter("error", SAWarning)
            store.resolve_conflict("product", product["localId"], keep="local")

        requeued = store.pending_changes()
        assert len(requeued) == 1
        assert min(requeued[0].entry_ids) > max(change.entry_ids)

    def test_resolve_requires_a_conflict(self, store):
        product = _product(store)
        with pytest.raises(ValidationError):
            store.resolve_conflict("product", product["localId"], keep="server")


# =============================================================================
# DOWNLOAD MERGE
# =============================================================================


def _server_product(server_id="1", code="P1", stock=10, **extra):
    return {
        "id": server_id,
        "name": f"Server {code}",
        "code": code,
        "price": 1.25,
        "stock": stock,
        "active": True,
        "updatedAt": "2026-01-01T10:00:00.000000Z",
        **extra,
    }


def _server_sale(server_id="9", number="202601010001"):
    return {
        "id": server_id,
        "saleNumber": number,
        "date": "2026-01-01T10:00:00.000000Z",
        "paymentMethod": "CASH",
        "status": "COMPLETED",
        "userId": 2,
        "items": [{"productId": "1", "productCode": "P1", "quantity": 2, "unitPrice": 1.25}],
    }


class TestMerge:
    def test_product_insert_then_update(self, store):
        assert store.merge_server_product(_server_product()) == "inserted"
        assert store.merge_server_product(_server_product(stock=7)) == "updated"

        local = store.get_product("1")
        assert local["stock"] == 7
        assert local["synced"] is True
        assert store.pending_changes() == []

    def test_unsynced_local_copy_is_not_overwritten(self, store):
        store.merge_server_product(_server_product())
        store.update_product("1", {"name": "Local edit"})

        assert store.merge_server_product(_server_product(name="Server edit")) == "skipped"
        assert store.get_product("1")["name"] == "Local edit"

    def test_code_collision_is_logged_as_conflict(self, store):
        _product(store, "P1")

        assert store.merge_server_product(_server_product(code="P1")) == "conflict"
        assert store.sync_logs(status="conflict")[0]["entityType"] == "product"

    def test_sale_merge_is_idempotent(self, store):
        store.merge_server_product(_server_product())

        assert store.merge_server_sale(_server_sale()) == "inserted"
        assert store.merge_server_sale(_server_sale()) == "skipped"

        sales = store.list_sales()
        assert len(sales) == 1
        assert sales[0]["total"] == 2.5
        assert sales[0]["synced"] is True

    def test_checkpoint_round_trip(self, store):
        assert store.get_checkpoint() is None
        store.set_checkpoint("2026-01-01T00:00:00.000000Z")
        store.set_checkpoint("2026-01-02T00:00:00.000000Z")
        assert store.get_checkpoint() == "2026-01-02T00:00:00.000000Z"

    def test_sync_logs_cleared(self, store):
        store.log_sync("upload", "success", "ok")
        store.log_sync("download", "error", "down")

        assert [e["status"] for e in store.sync_logs()] == ["error", "success"]
        assert store.clear_sync_logs(older_than_days=1) == 0
        assert store.clear_sync_logs() == 2
