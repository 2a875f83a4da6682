# Overview: Device-side persistent store for products, sales, cash sessions and the sync queue.

"""
LocalStore

Single-writer discipline: every mutation runs under one re-entrant lock and
inside one SQLAlchemy transaction, and queues its sync intent through the
MutationRecorder in that same transaction. A failure anywhere rolls back
both the change and its queue entry.

Reads do not take the lock; SQLite in WAL mode serves them alongside the
writer. Every public method returns plain dicts in the wire format (see
serializers.py) so callers never hold ORM objects across transactions.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterator

from sqlalchemy import create_engine, event, func, or_
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..money import to_cents
from ..payloads import (
    NOT_FOUND_REASONS,
    RESTOCKING_STATUSES,
    SALE_NUMBER_TAKEN,
    SALE_STATUSES,
    check_declared_amount,
    item_subtotal_cents,
    normalize_product_payload,
    normalize_sale_header,
    normalize_sale_items,
    reconcile_sale_totals,
)
from ..time_utils import day_bounds, day_prefix, parse_iso_datetime, to_utc_z, utcnow
from ..validation import ConflictError, ValidationError, coerce_datetime, coerce_int, coerce_str, require_choice
from .errors import InsufficientStockError
from .models import (
    LocalBase,
    LocalCashSession,
    LocalProduct,
    LocalSale,
    LocalSaleItem,
    SaleNumberSequence,
    SyncLogEntry,
    SyncQueueEntry,
    SyncStateValue,
)
from .recorder import MutationRecorder
from .serializers import (
    cash_session_to_dict,
    pending_sold_quantity,
    product_to_dict,
    sale_to_dict,
)

logger = logging.getLogger(__name__)

CHECKPOINT_KEY = "lastSyncTimestamp"

ENTITY_MODELS = {
    "product": LocalProduct,
    "sale": LocalSale,
    "cash_session": LocalCashSession,
}


@dataclass
class PendingChange:
    """Queue entries of one entity coalesced into a single upload item."""
    entity_type: str
    entity_id: str
    action: str
    payload: dict
    entry_ids: list[int] = field(default_factory=list)
    retries: int = 0


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, *, echo: bool = False) -> Engine:
    """SQLAlchemy engine for a local sqlite file (or an in-memory test database)."""
    kwargs: dict = {"echo": echo}
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    if is_sqlite:
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def _as_range_start(value) -> datetime | None:
    if isinstance(value, date) and not isinstance(value, datetime):
        return day_bounds(value)[0]
    return coerce_datetime(value, "start")


def _as_range_end(value) -> datetime | None:
    if isinstance(value, date) and not isinstance(value, datetime):
        return day_bounds(value)[1]
    return coerce_datetime(value, "end")


class LocalStore:
    def __init__(self, url: str = "sqlite:///offline.sqlite3", *, recorder: MutationRecorder | None = None,
                 echo: bool = False):
        self.url = url
        self.echo = echo
        self.recorder = recorder or MutationRecorder()
        self.engine: Engine | None = None
        self._session_factory: sessionmaker | None = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self) -> "LocalStore":
        if self.engine is not None:
            return self
        self.engine = build_engine(self.url, echo=self.echo)
        LocalBase.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info("Local store ready at %s", self.url)
        return self

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            self._session_factory = None

    def _require_open(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("LocalStore.init() has not been called")
        return self._session_factory

    @contextmanager
    def write(self) -> Iterator[Session]:
        """Serialized read-write transaction; commits on success, rolls back on any error."""
        factory = self._require_open()
        with self._lock:
            session = factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @contextmanager
    def read(self) -> Iterator[Session]:
        session = self._require_open()()
        try:
            yield session
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    @staticmethod
    def _find_product(session: Session, ref) -> LocalProduct | None:
        if ref in (None, ""):
            return None
        ref = str(ref)
        product = session.get(LocalProduct, ref)
        if product is None:
            product = session.query(LocalProduct).filter(LocalProduct.server_id == ref).first()
        return product

    def _get_product_or_raise(self, session: Session, ref) -> LocalProduct:
        product = self._find_product(session, ref)
        if product is None:
            raise ValidationError(f"Product not found: {ref}")
        return product

    @staticmethod
    def _active_key_holder(session: Session, column, value, exclude_id: str | None) -> LocalProduct | None:
        if value is None:
            return None
        query = session.query(LocalProduct).filter(column == value, LocalProduct.active.is_(True))
        if exclude_id is not None:
            query = query.filter(LocalProduct.id != exclude_id)
        return query.first()

    def _check_natural_keys(self, session: Session, product: LocalProduct) -> None:
        if not product.active:
            return
        if self._active_key_holder(session, LocalProduct.code, product.code, product.id):
            raise ConflictError(f"Product code already exists: {product.code}")
        if self._active_key_holder(session, LocalProduct.barcode, product.barcode, product.id):
            raise ConflictError(f"Barcode already exists: {product.barcode}")

    def create_product(self, data: dict) -> dict:
        fields = normalize_product_payload(data, partial=False)
        with self.write() as session:
            product = LocalProduct(**fields)
            self._check_natural_keys(session, product)
            session.add(product)
            self.recorder.record(session, "product", "CREATE", product)
            return product_to_dict(product)

    def update_product(self, product_id: str, data: dict) -> dict:
        patch = normalize_product_payload(data, partial=True)
        if not patch:
            raise ValidationError("No fields to update")
        with self.write() as session:
            product = self._get_product_or_raise(session, product_id)
            with session.no_autoflush:
                for key, value in patch.items():
                    setattr(product, key, value)
                if product.max_stock is not None and product.max_stock < product.min_stock:
                    raise ValidationError("maxStock must be >= minStock")
                self._check_natural_keys(session, product)
            self.recorder.record(session, "product", "UPDATE", product)
            return product_to_dict(product)

    def delete_product(self, product_id: str) -> dict:
        """Soft delete: the product stays for sale history, flagged inactive."""
        with self.write() as session:
            product = self._get_product_or_raise(session, product_id)
            if not product.active and product.action == "DELETE":
                return product_to_dict(product)
            product.active = False
            self.recorder.record(session, "product", "DELETE", product)
            return product_to_dict(product)

    def adjust_stock(self, product_id: str, delta, reason: str | None = None) -> dict:
        delta = coerce_int(delta, "delta")
        with self.write() as session:
            product = self._get_product_or_raise(session, product_id)
            new_stock = product.stock + delta
            if new_stock < 0:
                raise InsufficientStockError([{
                    "productId": product.id,
                    "code": product.code,
                    "name": product.name,
                    "requested": -delta,
                    "available": product.stock,
                }])
            product.stock = new_stock
            self.recorder.record(session, "product", "UPDATE", product)
            logger.info("Stock of %s adjusted by %+d (%s)", product.code, delta, reason or "manual")
            return product_to_dict(product)

    def get_product(self, product_id: str) -> dict | None:
        with self.read() as session:
            product = self._find_product(session, product_id)
            return product_to_dict(product) if product else None

    def get_product_by_code(self, code: str) -> dict | None:
        with self.read() as session:
            product = (
                session.query(LocalProduct)
                .filter(LocalProduct.code == code.strip(), LocalProduct.active.is_(True))
                .first()
            )
            return product_to_dict(product) if product else None

    def get_product_by_barcode(self, barcode: str) -> dict | None:
        with self.read() as session:
            product = (
                session.query(LocalProduct)
                .filter(LocalProduct.barcode == barcode.strip(), LocalProduct.active.is_(True))
                .first()
            )
            return product_to_dict(product) if product else None

    def list_products(
        self,
        *,
        category: str | None = None,
        active: bool | None = True,
        search: str | None = None,
        low_stock: bool = False,
    ) -> list[dict]:
        """
        Filtered product listing, ordered by name.

        search matches a case-insensitive substring of name or code, or a
        substring of the barcode. low_stock keeps products with
        stock <= min_stock.
        """
        with self.read() as session:
            query = session.query(LocalProduct)
            if category:
                query = query.filter(LocalProduct.category == category)
            if active is not None:
                query = query.filter(LocalProduct.active.is_(active))
            if search:
                term = search.strip().lower()
                query = query.filter(or_(
                    func.lower(LocalProduct.name).contains(term, autoescape=True),
                    func.lower(LocalProduct.code).contains(term, autoescape=True),
                    LocalProduct.barcode.contains(search.strip(), autoescape=True),
                ))
            if low_stock:
                query = query.filter(LocalProduct.stock <= LocalProduct.min_stock)
            products = query.order_by(LocalProduct.name.asc(), LocalProduct.code.asc()).all()
            return [product_to_dict(p) for p in products]

    # ------------------------------------------------------------------
    # Sales
    # ------------------------------------------------------------------

    def _reserve_sale_number(self, session: Session, when: datetime) -> str:
        prefix = day_prefix(when)
        numbers = session.query(LocalSale.sale_number).filter(LocalSale.sale_number.like(f"{prefix}%")).all()
        highest = 0
        for (number,) in numbers:
            suffix = number[len(prefix):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))

        sequence = session.get(SaleNumberSequence, prefix)
        if sequence is None:
            sequence = SaleNumberSequence(day=prefix, next_number=1)
            session.add(sequence)
        candidate = max(highest + 1, sequence.next_number)
        sequence.next_number = candidate + 1
        session.flush()
        return f"{prefix}{candidate:04d}"

    def generate_sale_number(self) -> str:
        """Reserve the next YYYYMMDDNNNN number for today (UTC)."""
        with self.write() as session:
            return self._reserve_sale_number(session, utcnow())

    def create_sale(self, data: dict) -> dict:
        """
        Record a sale and decrement stock, atomically.

        Every item is resolved and the requested quantities are aggregated
        per product before any row changes, so a shortage on any product
        raises InsufficientStockError with nothing written.
        """
        header = normalize_sale_header(data)
        if header["status"] not in ("PENDING", "COMPLETED"):
            raise ValidationError("New sales must be PENDING or COMPLETED")
        items = normalize_sale_items(data.get("items"))
        user_id = coerce_int(data.get("userId"), "userId", required=False)

        with self.write() as session:
            resolved = []
            requested: dict[str, int] = {}
            for item in items:
                product = self._find_product(session, item["product_ref"])
                if product is None and item["product_code"]:
                    product = (
                        session.query(LocalProduct)
                        .filter(LocalProduct.code == item["product_code"], LocalProduct.active.is_(True))
                        .first()
                    )
                if product is None or not product.active:
                    raise ValidationError(f"Product not found: {item['product_ref'] or item['product_code']}")
                resolved.append((item, product))
                requested[product.id] = requested.get(product.id, 0) + item["quantity"]

            products = {product.id: product for _, product in resolved}
            shortages = [
                {
                    "productId": pid,
                    "code": products[pid].code,
                    "name": products[pid].name,
                    "requested": qty,
                    "available": products[pid].stock,
                }
                for pid, qty in requested.items()
                if products[pid].stock < qty
            ]
            if shortages:
                raise InsufficientStockError(shortages)

            line_subtotals = []
            lines = []
            for position, (item, product) in enumerate(resolved):
                unit_price = product.price_cents if item["unit_price_cents"] is None else item["unit_price_cents"]
                subtotal = item_subtotal_cents(item["quantity"], unit_price, item["discount_cents"])
                check_declared_amount(item["declared_subtotal"], subtotal, f"items[{position + 1}].subtotal")
                line_subtotals.append(subtotal)
                lines.append(LocalSaleItem(
                    position=position,
                    product_id=product.id,
                    product_server_id=product.server_id,
                    product_code=product.code,
                    product_name=product.name,
                    quantity=item["quantity"],
                    unit_price_cents=unit_price,
                    discount_cents=item["discount_cents"],
                    subtotal_cents=subtotal,
                ))

            totals = reconcile_sale_totals(
                line_subtotals,
                discount_cents=header["discount_cents"],
                tax_cents=header["tax_cents"],
            )
            check_declared_amount(data.get("subtotal"), totals["subtotal_cents"], "subtotal")
            check_declared_amount(data.get("total"), totals["total_cents"], "total")

            cash_session = None
            cash_session_ref = data.get("cashSessionId")
            if cash_session_ref:
                cash_session = session.get(LocalCashSession, str(cash_session_ref))
                if cash_session is None or cash_session.status != "OPEN":
                    raise ValidationError("Cash session is not open")
            elif user_id is not None:
                cash_session = self._open_session_for(session, user_id)

            now = utcnow()
            sale = LocalSale(
                sale_number=self._reserve_sale_number(session, now),
                date=now,
                payment_method=header["payment_method"],
                status=header["status"],
                user_id=user_id,
                customer_id=header["customer_id"],
                notes=header["notes"],
                cash_session=cash_session,
                items=lines,
                **totals,
            )
            session.add(sale)
            for pid, qty in requested.items():
                products[pid].stock -= qty

            self.recorder.record(session, "sale", "CREATE", sale)
            logger.info("Recorded sale %s (%d items, total %s cents)", sale.sale_number, len(lines), sale.total_cents)
            return sale_to_dict(sale)

    @staticmethod
    def _restore_stock(session: Session, sale: LocalSale) -> None:
        if sale.stock_restored:
            return
        for item in sale.items:
            if item.product_id is not None:
                product = session.get(LocalProduct, item.product_id)
                if product is not None:
                    product.stock += item.quantity
        sale.stock_restored = True

    def update_sale(self, sale_id: str, *, status: str | None = None, notes: str | None = None) -> dict:
        """Status / notes change. Cancelling or refunding puts the items back in stock."""
        with self.write() as session:
            sale = self._find_sale(session, sale_id)
            if sale is None:
                raise ValidationError(f"Sale not found: {sale_id}")
            if status is not None:
                new_status = require_choice(status, "status", SALE_STATUSES)
                if sale.status in RESTOCKING_STATUSES and new_status != sale.status:
                    raise ValidationError(f"Sale {sale.sale_number} is {sale.status} and cannot change status")
                if new_status == "PENDING" and sale.status == "COMPLETED":
                    raise ValidationError("Completed sales cannot return to PENDING")
                if new_status in RESTOCKING_STATUSES:
                    self._restore_stock(session, sale)
                sale.status = new_status
            if notes is not None:
                sale.notes = coerce_str(notes, "notes")
            self.recorder.record(session, "sale", "UPDATE", sale)
            return sale_to_dict(sale)

    @staticmethod
    def _find_sale(session: Session, ref) -> LocalSale | None:
        if ref in (None, ""):
            return None
        ref = str(ref)
        sale = session.get(LocalSale, ref)
        if sale is None:
            sale = (
                session.query(LocalSale)
                .filter(or_(LocalSale.server_id == ref, LocalSale.sale_number == ref))
                .first()
            )
        return sale

    def get_sale(self, sale_id: str) -> dict | None:
        with self.read() as session:
            sale = self._find_sale(session, sale_id)
            return sale_to_dict(sale) if sale else None

    def list_sales(
        self,
        *,
        start=None,
        end=None,
        user_id: int | None = None,
        payment_method: str | None = None,
        status: str | None = None,
    ) -> list[dict]:
        """Sales newest first. A date `end` is inclusive of that whole day."""
        start_dt = _as_range_start(start)
        end_dt = _as_range_end(end)
        with self.read() as session:
            query = session.query(LocalSale)
            if start_dt is not None:
                query = query.filter(LocalSale.date >= start_dt)
            if end_dt is not None:
                if isinstance(end, date) and not isinstance(end, datetime):
                    query = query.filter(LocalSale.date < end_dt)
                else:
                    query = query.filter(LocalSale.date <= end_dt)
            if user_id is not None:
                query = query.filter(LocalSale.user_id == user_id)
            if payment_method:
                query = query.filter(LocalSale.payment_method == payment_method.upper())
            if status:
                query = query.filter(LocalSale.status == status.upper())
            sales = query.order_by(LocalSale.date.desc(), LocalSale.sale_number.desc()).all()
            return [sale_to_dict(s) for s in sales]

    def daily_stats(self, day: date | None = None) -> dict:
        day = day or utcnow().date()
        start, end = day_bounds(day)
        with self.read() as session:
            sales = session.query(LocalSale).filter(LocalSale.date >= start, LocalSale.date < end).all()
            completed = [s for s in sales if s.status == "COMPLETED"]
            by_method: dict[str, dict] = {}
            for sale in completed:
                bucket = by_method.setdefault(sale.payment_method, {"count": 0, "totalCents": 0})
                bucket["count"] += 1
                bucket["totalCents"] += sale.total_cents
            return {
                "date": day.isoformat(),
                "salesCount": len(completed),
                "totalCents": sum(s.total_cents for s in completed),
                "taxCents": sum(s.tax_cents for s in completed),
                "discountCents": sum(s.discount_cents for s in completed),
                "itemsSold": sum(item.quantity for s in completed for item in s.items),
                "cancelledCount": sum(1 for s in sales if s.status in RESTOCKING_STATUSES),
                "byPaymentMethod": by_method,
            }

    # ------------------------------------------------------------------
    # Cash sessions
    # ------------------------------------------------------------------

    @staticmethod
    def _open_session_for(session: Session, user_id: int) -> LocalCashSession | None:
        return (
            session.query(LocalCashSession)
            .filter(LocalCashSession.user_id == user_id, LocalCashSession.status == "OPEN")
            .first()
        )

    def open_cash_session(self, user_id, start_amount, notes: str | None = None) -> dict:
        user_id = coerce_int(user_id, "userId")
        start_cents = to_cents(start_amount, "startAmount")
        if start_cents < 0:
            raise ValidationError("startAmount must be >= 0")
        with self.write() as session:
            if self._open_session_for(session, user_id) is not None:
                raise ConflictError(f"User {user_id} already has an open cash session")
            cash_session = LocalCashSession(
                user_id=user_id,
                start_amount_cents=start_cents,
                status="OPEN",
                opened_at=utcnow(),
                notes=coerce_str(notes, "notes"),
            )
            session.add(cash_session)
            self.recorder.record(session, "cash_session", "CREATE", cash_session)
            return cash_session_to_dict(cash_session)

    def get_open_cash_session(self, user_id) -> dict | None:
        with self.read() as session:
            cash_session = self._open_session_for(session, coerce_int(user_id, "userId"))
            return cash_session_to_dict(cash_session) if cash_session else None

    def close_cash_session(self, session_id: str, end_amount, notes: str | None = None) -> dict:
        end_cents = to_cents(end_amount, "endAmount")
        if end_cents < 0:
            raise ValidationError("endAmount must be >= 0")
        with self.write() as session:
            cash_session = session.get(LocalCashSession, session_id)
            if cash_session is None:
                raise ValidationError(f"Cash session not found: {session_id}")
            if cash_session.status != "OPEN":
                raise ConflictError("Cash session is already closed")
            cash_session.total_sales_cents = sum(
                s.total_cents for s in cash_session.sales if s.status == "COMPLETED"
            )
            cash_session.end_amount_cents = end_cents
            cash_session.status = "CLOSED"
            cash_session.closed_at = utcnow()
            if notes is not None:
                cash_session.notes = coerce_str(notes, "notes")
            self.recorder.record(session, "cash_session", "UPDATE", cash_session)
            return cash_session_to_dict(cash_session)

    def cash_session_stats(self, session_id: str) -> dict:
        with self.read() as session:
            cash_session = session.get(LocalCashSession, session_id)
            if cash_session is None:
                raise ValidationError(f"Cash session not found: {session_id}")
            completed = [s for s in cash_session.sales if s.status == "COMPLETED"]
            cash_sales = sum(s.total_cents for s in completed if s.payment_method == "CASH")
            expected_cash = cash_session.start_amount_cents + cash_sales
            by_method: dict[str, int] = {}
            for sale in completed:
                by_method[sale.payment_method] = by_method.get(sale.payment_method, 0) + sale.total_cents
            return {
                "session": cash_session_to_dict(cash_session),
                "salesCount": len(completed),
                "totalSalesCents": sum(s.total_cents for s in completed),
                "byPaymentMethodCents": by_method,
                "expectedCashCents": expected_cash,
                "differenceCents": (
                    None if cash_session.end_amount_cents is None
                    else cash_session.end_amount_cents - expected_cash
                ),
            }

    # ------------------------------------------------------------------
    # Sync queue
    # ------------------------------------------------------------------

    def pending_changes(self, now: datetime | None = None) -> list[PendingChange]:
        """
        Due PENDING entries coalesced per entity, oldest entity first.

        The latest snapshot wins. The upload action is CREATE while the
        server id is unknown, DELETE when the last intent was a delete and
        UPDATE otherwise. Entities with a CONFLICT or DEAD entry are held
        back until that entry is resolved or retried.
        """
        now = now or utcnow()
        with self.read() as session:
            held = {
                (entity_type, entity_id)
                for entity_type, entity_id in session.query(SyncQueueEntry.entity_type, SyncQueueEntry.entity_id)
                .filter(SyncQueueEntry.status.in_(("CONFLICT", "DEAD")))
            }
            grouped: dict[tuple[str, str], list[SyncQueueEntry]] = {}
            for entry in (
                session.query(SyncQueueEntry)
                .filter(SyncQueueEntry.status == "PENDING")
                .order_by(SyncQueueEntry.id.asc())
            ):
                key = (entry.entity_type, entry.entity_id)
                if key in held:
                    continue
                grouped.setdefault(key, []).append(entry)

            changes = []
            for (entity_type, entity_id), entries in grouped.items():
                if not any(e.next_attempt_at is None or e.next_attempt_at <= now for e in entries):
                    continue
                entity = session.get(ENTITY_MODELS[entity_type], entity_id)
                if entity is None:
                    logger.warning("Queued %s %s no longer exists locally", entity_type, entity_id)
                    continue
                latest = entries[-1]
                if not entity.server_id:
                    action = "CREATE"
                elif latest.action == "DELETE":
                    action = "DELETE"
                else:
                    action = "UPDATE"
                payload = dict(latest.payload)
                payload["id"] = entity.server_id or ""
                payload["action"] = action
                changes.append(PendingChange(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=action,
                    payload=payload,
                    entry_ids=[e.id for e in entries],
                    retries=max(e.retries for e in entries),
                ))
            return changes

    @staticmethod
    def _entries_remaining(session: Session, entity_type: str, entity_id: str) -> int:
        return (
            session.query(func.count(SyncQueueEntry.id))
            .filter(SyncQueueEntry.entity_type == entity_type, SyncQueueEntry.entity_id == entity_id)
            .scalar()
        )

    def acknowledge(self, entity_type: str, entity_id: str, entry_ids: list[int],
                    server_id: str | None = None) -> None:
        """Server accepted the change: drop its entries and link the server id."""
        with self.write() as session:
            session.query(SyncQueueEntry).filter(SyncQueueEntry.id.in_(entry_ids)).delete(
                synchronize_session=False
            )
            entity = session.get(ENTITY_MODELS[entity_type], entity_id)
            if entity is None:
                return
            if server_id:
                entity.server_id = str(server_id)
                if entity_type == "product":
                    session.query(LocalSaleItem).filter(
                        LocalSaleItem.product_id == entity_id,
                        LocalSaleItem.product_server_id.is_(None),
                    ).update({"product_server_id": str(server_id)}, synchronize_session=False)
            # Entries recorded while the upload was in flight keep the entity unsynced
            if self._entries_remaining(session, entity_type, entity_id) == 0:
                entity.synced = True
                entity.action = None

    def mark_failed(
        self,
        entry_ids: list[int],
        error: str,
        *,
        max_retries: int,
        backoff_base: float,
        backoff_max: float,
        now: datetime | None = None,
    ) -> int:
        """
        Count a failed attempt on each entry.

        The next attempt waits base * 2**(retries - 1) seconds, capped at
        backoff_max. Entries reaching max_retries move to DEAD. Returns the
        number of entries dead-lettered by this call.
        """
        now = now or utcnow()
        dead = 0
        with self.write() as session:
            for entry in session.query(SyncQueueEntry).filter(SyncQueueEntry.id.in_(entry_ids)):
                entry.retries += 1
                entry.last_error = error
                if entry.retries >= max_retries:
                    entry.status = "DEAD"
                    entry.next_attempt_at = None
                    dead += 1
                else:
                    delay = min(backoff_base * (2 ** (entry.retries - 1)), backoff_max)
                    entry.next_attempt_at = now + timedelta(seconds=delay)
        if dead:
            logger.warning("%d sync queue entries moved to dead letter", dead)
        return dead

    def mark_conflict(self, entry_ids: list[int], conflict: dict) -> None:
        with self.write() as session:
            for entry in session.query(SyncQueueEntry).filter(SyncQueueEntry.id.in_(entry_ids)):
                entry.status = "CONFLICT"
                entry.conflict = conflict
                entry.last_error = conflict.get("reason")
                entry.next_attempt_at = None

    def list_conflicts(self) -> list[dict]:
        with self.read() as session:
            entries = (
                session.query(SyncQueueEntry)
                .filter(SyncQueueEntry.status == "CONFLICT")
                .order_by(SyncQueueEntry.id.asc())
                .all()
            )
            conflicts: dict[tuple[str, str], dict] = {}
            for entry in entries:
                key = (entry.entity_type, entry.entity_id)
                details = entry.conflict or {}
                record = conflicts.setdefault(key, {
                    "entityType": entry.entity_type,
                    "entityId": entry.entity_id,
                    "entryIds": [],
                    "detectedAt": to_utc_z(entry.updated_at),
                })
                record["entryIds"].append(entry.id)
                record["reason"] = details.get("reason")
                record["serverId"] = details.get("serverId")
                record["serverData"] = details.get("serverData")
                record["clientData"] = details.get("clientData") or entry.payload
            return list(conflicts.values())

    def resolve_conflict(self, entity_type: str, entity_id: str, keep: str = "local") -> dict:
        """
        Manual conflict resolution.

        keep="server": the local record takes the server copy (a local sale
        that lost its number to another sale is removed and its stock put
        back). keep="local": the local record is queued again; products link
        to the server record so the upload overwrites it, sales get a fresh
        sale number.
        """
        if keep not in ("local", "server"):
            raise ValidationError("keep must be 'local' or 'server'")
        model = ENTITY_MODELS.get(entity_type)
        if model is None:
            raise ValidationError(f"Unsupported entity type: {entity_type}")

        with self.write() as session:
            entries = (
                session.query(SyncQueueEntry)
                .filter(
                    SyncQueueEntry.entity_type == entity_type,
                    SyncQueueEntry.entity_id == entity_id,
                    SyncQueueEntry.status == "CONFLICT",
                )
                .order_by(SyncQueueEntry.id.asc())
                .all()
            )
            if not entries:
                raise ValidationError(f"No conflict recorded for {entity_type} {entity_id}")
            entity = session.get(model, entity_id)
            if entity is None:
                raise ValidationError(f"{entity_type} {entity_id} not found")

            conflict = entries[-1].conflict or {}
            reason = conflict.get("reason")
            server_data = conflict.get("serverData")
            server_id = conflict.get("serverId") or (server_data or {}).get("id") or None

            for entry in session.query(SyncQueueEntry).filter(
                SyncQueueEntry.entity_type == entity_type,
                SyncQueueEntry.entity_id == entity_id,
            ).all():
                session.delete(entry)
            session.flush()

            if keep == "server":
                result = self._keep_server_copy(session, entity_type, entity, server_data)
            else:
                result = self._keep_local_copy(session, entity_type, entity, reason, server_id)

            self._log(session, "resolve", "success", f"Kept {keep} copy ({reason})", entity_type, entity_id)
            return result

    def _keep_server_copy(self, session: Session, entity_type: str, entity, server_data: dict | None) -> dict:
        if entity_type == "product":
            if server_data:
                self._apply_server_product(session, entity, server_data)
            else:
                entity.active = False
                entity.server_id = None
                entity.synced = True
                entity.action = None
            return product_to_dict(entity)

        if entity_type == "sale":
            if server_data and server_data.get("localId") == entity.id:
                entity.server_id = str(server_data["id"])
                entity.synced = True
                entity.action = None
                return sale_to_dict(entity)
            self._restore_stock(session, entity)
            result = sale_to_dict(entity)
            session.delete(entity)
            return {**result, "removed": True}

        if server_data:
            entity.server_id = str(server_data.get("id")) if server_data.get("id") else entity.server_id
            entity.status = server_data.get("status") or entity.status
        entity.synced = True
        entity.action = None
        return cash_session_to_dict(entity)

    def _keep_local_copy(self, session: Session, entity_type: str, entity, reason: str | None,
                         server_id: str | None) -> dict:
        if reason in NOT_FOUND_REASONS:
            entity.server_id = None
        elif entity_type == "product" and server_id:
            entity.server_id = str(server_id)
        if entity_type == "sale" and reason == SALE_NUMBER_TAKEN:
            entity.sale_number = self._reserve_sale_number(session, utcnow())
        self.recorder.record(session, entity_type, "UPDATE", entity)
        if entity_type == "product":
            return product_to_dict(entity)
        if entity_type == "sale":
            return sale_to_dict(entity)
        return cash_session_to_dict(entity)

    def retry_dead(self, entity_type: str | None = None) -> int:
        """Put DEAD entries back in the queue with a fresh retry budget."""
        with self.write() as session:
            query = session.query(SyncQueueEntry).filter(SyncQueueEntry.status == "DEAD")
            if entity_type:
                query = query.filter(SyncQueueEntry.entity_type == entity_type)
            count = 0
            for entry in query:
                entry.status = "PENDING"
                entry.retries = 0
                entry.next_attempt_at = None
                count += 1
            return count

    def queue_stats(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        with self.read() as session:
            rows = (
                session.query(SyncQueueEntry.status, SyncQueueEntry.entity_type, func.count(SyncQueueEntry.id))
                .group_by(SyncQueueEntry.status, SyncQueueEntry.entity_type)
                .all()
            )
            stats = {"pending": 0, "conflict": 0, "dead": 0, "byEntity": {}}
            for status, entity_type, count in rows:
                stats[status.lower()] = stats.get(status.lower(), 0) + count
                by_entity = stats["byEntity"].setdefault(entity_type, {})
                by_entity[status.lower()] = count
            stats["due"] = (
                session.query(func.count(SyncQueueEntry.id))
                .filter(
                    SyncQueueEntry.status == "PENDING",
                    or_(SyncQueueEntry.next_attempt_at.is_(None), SyncQueueEntry.next_attempt_at <= now),
                )
                .scalar()
            )
            stats["unsynced"] = {
                entity_type: session.query(func.count()).select_from(model).filter(model.synced.is_(False)).scalar()
                for entity_type, model in ENTITY_MODELS.items()
            }
            return stats

    # ------------------------------------------------------------------
    # Download merge
    # ------------------------------------------------------------------

    def _apply_server_product(self, session: Session, product: LocalProduct, data: dict) -> None:
        fields = normalize_product_payload(data, partial=False)
        server_stock = fields.pop("stock")
        with session.no_autoflush:
            for key, value in fields.items():
                setattr(product, key, value)
            product.stock = max(server_stock - pending_sold_quantity(session, product.id), 0)
            product.server_id = str(data["id"])
            product.last_modified = (
                parse_iso_datetime(data.get("updatedAt") or data.get("lastModified")) or utcnow()
            )
            product.synced = True
            product.action = None

    def merge_server_product(self, data: dict) -> str:
        """
        Upsert one downloaded product. Returns inserted, updated, skipped or conflict.

        Local products with unsynced changes are kept as they are. A server
        product whose code or barcode is held by another active local
        product is not applied and is logged as a conflict.
        """
        server_id = str(data.get("id") or "")
        if not server_id:
            raise ValidationError("Downloaded product has no id")

        with self.write() as session:
            product = session.query(LocalProduct).filter(LocalProduct.server_id == server_id).first()
            if product is None and data.get("localId"):
                candidate = session.get(LocalProduct, str(data["localId"]))
                if candidate is not None and not candidate.server_id:
                    product = candidate

            if product is not None and not product.synced:
                if not product.server_id:
                    product.server_id = server_id
                return "skipped"

            active = data.get("active", True) is not False
            if active:
                exclude = product.id if product is not None else None
                holder = (
                    self._active_key_holder(session, LocalProduct.code, data.get("code"), exclude)
                    or self._active_key_holder(session, LocalProduct.barcode, data.get("barcode") or None, exclude)
                )
                if holder is not None:
                    self._log(
                        session, "download", "conflict",
                        f"Server product {data.get('code')} collides with local product {holder.id}",
                        "product", holder.id,
                    )
                    return "conflict"

            if product is None:
                product = LocalProduct(created_at=utcnow())
                session.add(product)
                outcome = "inserted"
            else:
                outcome = "updated"
            self._apply_server_product(session, product, data)
            return outcome

    def merge_server_sale(self, data: dict) -> str:
        """Insert a downloaded sale unless this device already has it. Returns inserted or skipped."""
        server_id = str(data.get("id") or "")
        sale_number = data.get("saleNumber")
        if not server_id or not sale_number:
            raise ValidationError("Downloaded sale needs id and saleNumber")

        with self.write() as session:
            exists = (
                session.query(LocalSale.id)
                .filter(or_(LocalSale.server_id == server_id, LocalSale.sale_number == sale_number))
                .first()
            )
            if exists is None and data.get("localId"):
                exists = session.get(LocalSale, str(data["localId"]))
            if exists is not None:
                return "skipped"

            header = normalize_sale_header(data)
            items = normalize_sale_items(data.get("items"))
            lines = []
            for position, item in enumerate(items):
                product = None
                if item["product_ref"]:
                    product = (
                        session.query(LocalProduct)
                        .filter(LocalProduct.server_id == item["product_ref"])
                        .first()
                    )
                if product is None and item["product_code"]:
                    product = session.query(LocalProduct).filter(LocalProduct.code == item["product_code"]).first()
                unit_price = item["unit_price_cents"] or 0
                lines.append(LocalSaleItem(
                    position=position,
                    product_id=product.id if product is not None else None,
                    product_server_id=item["product_ref"] or None,
                    product_code=item["product_code"] or (product.code if product is not None else None),
                    product_name=item["product_name"] or (product.name if product is not None else None),
                    quantity=item["quantity"],
                    unit_price_cents=unit_price,
                    discount_cents=item["discount_cents"],
                    subtotal_cents=item_subtotal_cents(item["quantity"], unit_price, item["discount_cents"]),
                ))

            totals = reconcile_sale_totals(
                [line.subtotal_cents for line in lines],
                discount_cents=header["discount_cents"],
                tax_cents=header["tax_cents"],
            )
            session.add(LocalSale(
                server_id=server_id,
                sale_number=str(sale_number),
                date=parse_iso_datetime(data.get("date")) or utcnow(),
                payment_method=header["payment_method"],
                status=header["status"],
                stock_restored=header["status"] in RESTOCKING_STATUSES,
                user_id=coerce_int(data.get("userId"), "userId", required=False),
                customer_id=header["customer_id"],
                notes=header["notes"],
                items=lines,
                last_modified=parse_iso_datetime(data.get("updatedAt") or data.get("lastModified")) or utcnow(),
                synced=True,
                action=None,
                **totals,
            ))
            return "inserted"

    # ------------------------------------------------------------------
    # Checkpoint and sync log
    # ------------------------------------------------------------------

    def get_checkpoint(self) -> str | None:
        with self.read() as session:
            row = session.get(SyncStateValue, CHECKPOINT_KEY)
            return row.value if row else None

    def set_checkpoint(self, value: str) -> None:
        with self.write() as session:
            row = session.get(SyncStateValue, CHECKPOINT_KEY)
            if row is None:
                session.add(SyncStateValue(key=CHECKPOINT_KEY, value=value))
            else:
                row.value = value

    @staticmethod
    def _log(session: Session, direction: str, status: str, details: str | None,
             entity_type: str | None = None, entity_id: str | None = None) -> None:
        session.add(SyncLogEntry(
            direction=direction,
            status=status,
            details=details,
            entity_type=entity_type,
            entity_id=entity_id,
        ))

    def log_sync(self, direction: str, status: str, details: str | None = None, *,
                 entity_type: str | None = None, entity_id: str | None = None) -> None:
        with self.write() as session:
            self._log(session, direction, status, details, entity_type, entity_id)

    def sync_logs(self, limit: int = 50, status: str | None = None) -> list[dict]:
        with self.read() as session:
            query = session.query(SyncLogEntry)
            if status:
                query = query.filter(SyncLogEntry.status == status)
            rows = query.order_by(SyncLogEntry.id.desc()).limit(limit).all()
            return [row.to_dict() for row in rows]

    def clear_sync_logs(self, older_than_days: int | None = None) -> int:
        with self.write() as session:
            query = session.query(SyncLogEntry)
            if older_than_days is not None:
                query = query.filter(SyncLogEntry.created_at < utcnow() - timedelta(days=older_than_days))
            return query.delete(synchronize_session=False)
