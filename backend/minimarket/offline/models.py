"""
Local (device-side) schema.

Plain SQLAlchemy rather than Flask-SQLAlchemy: the offline store lives in a
client process that has no Flask app, and it owns its own engine.

Identity: every row has a client-assigned `id` (uuid hex, the wire
`localId`) and a nullable `server_id` learned from the server of record.
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, relationship

from ..time_utils import to_utc_z, utcnow


def new_local_id() -> str:
    return uuid.uuid4().hex


class LocalBase(DeclarativeBase):
    pass


class LocalProduct(LocalBase):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        # Natural keys are unique among active (non-deleted) products only
        Index("uq_products_active_code", "code", unique=True, sqlite_where=text("active = 1")),
        Index(
            "uq_products_active_barcode",
            "barcode",
            unique=True,
            sqlite_where=text("active = 1 AND barcode IS NOT NULL"),
        ),
        Index("uq_products_server_id", "server_id", unique=True, sqlite_where=text("server_id IS NOT NULL")),
        Index("ix_products_category", "category"),
    )

    id = Column(String(32), primary_key=True, default=new_local_id)
    server_id = Column(String(64), nullable=True)

    name = Column(String(255), nullable=False)
    code = Column(String(64), nullable=False)
    barcode = Column(String(64), nullable=True)
    price_cents = Column(Integer, nullable=False, default=0)
    cost_cents = Column(Integer, nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)
    min_stock = Column(Integer, nullable=False, default=0)
    max_stock = Column(Integer, nullable=True)
    category = Column(String(128), nullable=False, default="General")
    brand = Column(String(128), nullable=True)
    description = Column(Text, nullable=True)
    unit = Column(String(32), nullable=False, default="unit")
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_modified = Column(DateTime, nullable=False, default=utcnow)
    synced = Column(Boolean, nullable=False, default=False)
    # CREATE / UPDATE / DELETE while unsynced, None once acknowledged
    action = Column(String(16), nullable=True)

    def __repr__(self) -> str:
        return f"<LocalProduct id={self.id} code={self.code!r} stock={self.stock} synced={self.synced}>"


class LocalCashSession(LocalBase):
    __tablename__ = "cash_sessions"
    __table_args__ = (
        Index("ix_cash_sessions_user_status", "user_id", "status"),
        Index("uq_cash_sessions_server_id", "server_id", unique=True, sqlite_where=text("server_id IS NOT NULL")),
    )

    id = Column(String(32), primary_key=True, default=new_local_id)
    server_id = Column(String(64), nullable=True)
    user_id = Column(Integer, nullable=True)

    start_amount_cents = Column(Integer, nullable=False, default=0)
    end_amount_cents = Column(Integer, nullable=True)
    total_sales_cents = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default="OPEN")
    opened_at = Column(DateTime, nullable=False, default=utcnow)
    closed_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    last_modified = Column(DateTime, nullable=False, default=utcnow)
    synced = Column(Boolean, nullable=False, default=False)
    action = Column(String(16), nullable=True)

    sales = relationship("LocalSale", back_populates="cash_session")


class LocalSale(LocalBase):
    __tablename__ = "sales"
    __table_args__ = (
        Index("ix_sales_date", "date"),
        Index("ix_sales_user_date", "user_id", "date"),
        Index("uq_sales_server_id", "server_id", unique=True, sqlite_where=text("server_id IS NOT NULL")),
    )

    id = Column(String(32), primary_key=True, default=new_local_id)
    server_id = Column(String(64), nullable=True)
    sale_number = Column(String(16), nullable=False, unique=True)
    date = Column(DateTime, nullable=False, default=utcnow)

    subtotal_cents = Column(Integer, nullable=False, default=0)
    tax_cents = Column(Integer, nullable=False, default=0)
    discount_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False, default=0)

    payment_method = Column(String(16), nullable=False)
    user_id = Column(Integer, nullable=True)
    customer_id = Column(String(64), nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="COMPLETED")
    # Set once the sold quantities have been put back (cancel/refund)
    stock_restored = Column(Boolean, nullable=False, default=False)

    cash_session_id = Column(String(32), ForeignKey("cash_sessions.id"), nullable=True, index=True)

    last_modified = Column(DateTime, nullable=False, default=utcnow)
    synced = Column(Boolean, nullable=False, default=False)
    action = Column(String(16), nullable=True)

    items = relationship(
        "LocalSaleItem",
        back_populates="sale",
        order_by="LocalSaleItem.position",
        cascade="all, delete-orphan",
    )
    cash_session = relationship("LocalCashSession", back_populates="sales")

    def __repr__(self) -> str:
        return f"<LocalSale id={self.id} number={self.sale_number} total_cents={self.total_cents}>"


class LocalSaleItem(LocalBase):
    __tablename__ = "sale_items"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_sale_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    sale_id = Column(String(32), ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    # Null when a downloaded sale references a product this device never saw
    product_id = Column(String(32), ForeignKey("products.id"), nullable=True, index=True)
    product_server_id = Column(String(64), nullable=True)
    product_code = Column(String(64), nullable=True)
    product_name = Column(String(255), nullable=True)

    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    discount_cents = Column(Integer, nullable=False, default=0)
    subtotal_cents = Column(Integer, nullable=False)

    sale = relationship("LocalSale", back_populates="items")
    product = relationship("LocalProduct")


class SyncQueueEntry(LocalBase):
    """
    Durable sync intent, written in the same transaction as the mutation.

    PENDING entries are uploaded when due, CONFLICT entries wait for a
    manual decision and DEAD entries exhausted their retries.
    """
    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_status_due", "status", "next_attempt_at"),
        Index("ix_sync_queue_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(32), nullable=False)
    action = Column(String(16), nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    retries = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default="PENDING")
    next_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    conflict = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class SyncLogEntry(LocalBase):
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    direction = Column(String(16), nullable=False)  # upload, download, sync, resolve, retry
    status = Column(String(16), nullable=False)  # success, error, conflict
    details = Column(Text, nullable=True)
    entity_type = Column(String(32), nullable=True)
    entity_id = Column(String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": to_utc_z(self.created_at),
            "direction": self.direction,
            "status": self.status,
            "details": self.details,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
        }


class SyncStateValue(LocalBase):
    """Scalar client state (the download checkpoint)."""
    __tablename__ = "sync_state"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class SaleNumberSequence(LocalBase):
    """Next sale sequence number reserved for a UTC day (YYYYMMDD)."""
    __tablename__ = "sale_number_sequences"

    day = Column(String(8), primary_key=True)
    next_number = Column(Integer, nullable=False, default=1)
