from __future__ import annotations

from ..extensions import db
from ..ids import generate_id
from ..time_utils import to_utc_z, utcnow


class Store(db.Model):
    """A retailer's storefront. One store per retailer."""
    __tablename__ = "stores"

    id = db.Column(db.String(36), primary_key=True, default=generate_id)
    owner_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    address = db.Column(db.Text, nullable=True)
    city = db.Column(db.String(128), nullable=True)
    is_open = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    owner = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "address": self.address,
            "city": self.city,
            "is_open": self.is_open,
            "created_at": to_utc_z(self.created_at),
        }


class Listing(db.Model):
    """
    A product offered by a store at a price.

    Prices change over time; orders snapshot price_retail_cents into
    OrderItem.price_at_cents at placement.
    """
    __tablename__ = "listings"

    id = db.Column(db.String(36), primary_key=True, default=generate_id)
    store_id = db.Column(db.String(36), db.ForeignKey("stores.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(32), nullable=True)  # kg, piece, box, liter

    price_retail_cents = db.Column(db.BigInteger, nullable=False)
    price_wholesale_cents = db.Column(db.BigInteger, nullable=True)

    available = db.Column(db.Boolean, nullable=False, default=True)
    stock_qty = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    store = db.relationship("Store", backref=db.backref("listings", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "unit": self.unit,
            "price_retail_cents": self.price_retail_cents,
            "price_wholesale_cents": self.price_wholesale_cents,
            "available": self.available,
            "stock_qty": self.stock_qty,
        }
