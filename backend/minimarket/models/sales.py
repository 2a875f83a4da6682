from __future__ import annotations

from ..extensions import db
from ..money import from_cents
from ..time_utils import to_utc_z, utcnow


class CashSession(db.Model):
    """
    Cash register session (opening float to closing count) of one cashier.

    Sales recorded while the session is open point at it, so closing
    totals can be reconciled on the server as well as on the device.
    """
    __tablename__ = "cash_sessions"
    __table_args__ = (
        db.Index("ix_cash_sessions_user_status", "user_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    client_local_id = db.Column(db.String(64), nullable=True, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    start_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    end_amount_cents = db.Column(db.Integer, nullable=True)
    total_sales_cents = db.Column(db.Integer, nullable=False, default=0)

    # OPEN, CLOSED
    status = db.Column(db.String(16), nullable=False, default="OPEN")
    opened_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    closed_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow, index=True)

    user = db.relationship("User", backref=db.backref("cash_sessions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "localId": self.client_local_id,
            "userId": self.user_id,
            "startAmount": from_cents(self.start_amount_cents),
            "endAmount": from_cents(self.end_amount_cents),
            "totalSales": from_cents(self.total_sales_cents),
            "status": self.status,
            "openedAt": to_utc_z(self.opened_at),
            "closedAt": to_utc_z(self.closed_at),
            "notes": self.notes,
            "updatedAt": to_utc_z(self.updated_at),
            "lastModified": to_utc_z(self.updated_at),
        }


class Sale(db.Model):
    """
    Completed (or pending) sale document.

    Sales arrive mostly through sync uploads from offline registers. Items
    are immutable once written; only status and notes change afterwards,
    and a CANCELLED / REFUNDED status puts the stock back exactly once
    (tracked by stock_restored).
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_user_date", "user_id", "date"),
        db.Index("ix_sales_status_date", "status", "date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    client_local_id = db.Column(db.String(64), nullable=True, unique=True)

    # YYYYMMDDNNNN, assigned by the register that recorded the sale
    sale_number = db.Column(db.String(16), nullable=False, unique=True, index=True)
    date = db.Column(db.DateTime, nullable=False, default=utcnow)

    # All amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(16), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    customer_id = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # PENDING, COMPLETED, CANCELLED, REFUNDED
    status = db.Column(db.String(16), nullable=False, default="COMPLETED", index=True)
    stock_restored = db.Column(db.Boolean, nullable=False, default=False)

    cash_session_id = db.Column(db.Integer, db.ForeignKey("cash_sessions.id"), nullable=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow, index=True)

    user = db.relationship("User", backref=db.backref("sales", lazy=True))
    cash_session = db.relationship("CashSession", backref=db.backref("sales", lazy=True))
    items = db.relationship(
        "SaleItem",
        backref="sale",
        order_by="SaleItem.position",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "localId": self.client_local_id,
            "saleNumber": self.sale_number,
            "date": to_utc_z(self.date),
            "subtotal": from_cents(self.subtotal_cents),
            "tax": from_cents(self.tax_cents),
            "discount": from_cents(self.discount_cents),
            "total": from_cents(self.total_cents),
            "paymentMethod": self.payment_method,
            "userId": self.user_id,
            "customerId": self.customer_id,
            "notes": self.notes,
            "status": self.status,
            "cashSessionId": str(self.cash_session_id) if self.cash_session_id else "",
            "items": [item.to_dict() for item in self.items],
            "createdAt": to_utc_z(self.created_at),
            "updatedAt": to_utc_z(self.updated_at),
            "lastModified": to_utc_z(self.updated_at),
        }


class SaleItem(db.Model):
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_sale_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    # Denormalized so the line still reads correctly if the product is renamed
    product_code = db.Column(db.String(64), nullable=True)
    product_name = db.Column(db.String(255), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    subtotal_cents = db.Column(db.Integer, nullable=False)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "productId": str(self.product_id) if self.product_id else "",
            "productCode": self.product_code,
            "productName": self.product_name,
            "quantity": self.quantity,
            "unitPrice": from_cents(self.unit_price_cents),
            "discount": from_cents(self.discount_cents),
            "subtotal": from_cents(self.subtotal_cents),
        }
