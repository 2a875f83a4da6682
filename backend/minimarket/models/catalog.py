from __future__ import annotations

from ..extensions import db
from ..money import from_cents
from ..time_utils import to_utc_z, utcnow


class Product(db.Model):
    """
    Product master data on the server of record.

    CODE DESIGN DECISION:
    Product.code is the natural key shared with offline devices. It is unique
    among active products only, so a deleted (deactivated) product does not
    block re-using its code.

    updated_at is the last-write-wins clock for sync uploads and the
    delta filter for downloads; it is set in Python (not by the database)
    to keep microsecond precision.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index(
            "uq_products_active_code", "code", unique=True,
            sqlite_where=db.text("active = 1"), postgresql_where=db.text("active"),
        ),
        db.Index("ix_products_barcode", "barcode"),
        db.Index("ix_products_updated_at", "updated_at"),
        db.Index("ix_products_category_active", "category", "active"),
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Device id the product was first created with (idempotent upload replay)
    client_local_id = db.Column(db.String(64), nullable=True, unique=True)

    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(64), nullable=False)
    barcode = db.Column(db.String(64), nullable=True)

    # Authoritative storage in cents (wire format is a decimal number)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_cents = db.Column(db.Integer, nullable=False, default=0)

    stock = db.Column(db.Integer, nullable=False, default=0)
    min_stock = db.Column(db.Integer, nullable=False, default=0)
    max_stock = db.Column(db.Integer, nullable=True)
    category = db.Column(db.String(128), nullable=False, default="General")
    brand = db.Column(db.String(128), nullable=True)
    description = db.Column(db.Text, nullable=True)
    unit = db.Column(db.String(32), nullable=False, default="unit")
    active = db.Column(db.Boolean, nullable=False, default=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.code!r} name={self.name!r} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "localId": self.client_local_id,
            "name": self.name,
            "code": self.code,
            "barcode": self.barcode,
            "price": from_cents(self.price_cents),
            "cost": from_cents(self.cost_cents),
            "stock": self.stock,
            "minStock": self.min_stock,
            "maxStock": self.max_stock,
            "category": self.category,
            "brand": self.brand,
            "description": self.description,
            "unit": self.unit,
            "active": self.active,
            "versionId": self.version_id,
            "createdAt": to_utc_z(self.created_at),
            "updatedAt": to_utc_z(self.updated_at),
            "lastModified": to_utc_z(self.updated_at),
        }
