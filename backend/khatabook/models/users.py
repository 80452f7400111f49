from __future__ import annotations

from ..extensions import db
from ..ids import generate_id
from ..time_utils import to_utc_z, utcnow


ROLE_ADMIN = "ADMIN"
ROLE_RETAILER = "RETAILER"
ROLE_SHOP_OWNER = "SHOP_OWNER"
ROLE_DELIVERY_BOY = "DELIVERY_BOY"
VALID_ROLES = (ROLE_ADMIN, ROLE_RETAILER, ROLE_SHOP_OWNER, ROLE_DELIVERY_BOY)


class User(db.Model):
    """
    Platform account. Authentication itself lives outside this service;
    users are referenced here for ownership checks and attribution.
    """
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=generate_id)
    email = db.Column(db.String(255), nullable=False, unique=True)
    full_name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)

    # ADMIN, RETAILER, SHOP_OWNER, DELIVERY_BOY
    role = db.Column(db.String(16), nullable=False, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "phone": self.phone,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class RetailerDeliveryBoy(db.Model):
    """
    Which couriers a retailer may assign orders to.

    Only ACTIVE links allow assignment; unlinking flips the status rather
    than deleting the row so past assignments stay explainable.
    """
    __tablename__ = "retailer_delivery_boys"
    __table_args__ = (
        db.UniqueConstraint("retailer_id", "delivery_boy_id", name="uq_retailer_delivery_boy"),
    )

    id = db.Column(db.String(36), primary_key=True, default=generate_id)
    retailer_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    delivery_boy_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE")  # ACTIVE, INACTIVE
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    delivery_boy = db.relationship("User", foreign_keys=[delivery_boy_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "retailer_id": self.retailer_id,
            "delivery_boy_id": self.delivery_boy_id,
            "delivery_boy_name": self.delivery_boy.full_name if self.delivery_boy else None,
            "delivery_boy_phone": self.delivery_boy.phone if self.delivery_boy else None,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class SessionToken(db.Model):
    """
    Bearer tokens for the auth context.

    SECURITY NOTES:
    - Tokens stored hashed (SHA-256), never plaintext
    - Absolute expiry, revocable
    """
    __tablename__ = "session_tokens"
    __table_args__ = (
        db.Index("ix_session_tokens_user_active", "user_id", "is_revoked"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))
