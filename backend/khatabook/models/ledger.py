from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class LedgerAccount(db.Model):
    """
    Ledger tail for one (user, counterparty) scope.

    WHY: Posting must read the previous balance and write the next one as a
    single read-modify-write. Locking this row (and its version_id) serializes
    concurrent postings to the same scope without scanning entries.

    counterparty_key is the counterparty id, or "" for entries with no
    counterparty, so the unique constraint also covers that scope.
    """
    __tablename__ = "ledger_accounts"
    __table_args__ = (
        db.UniqueConstraint("user_id", "counterparty_key", name="uq_ledger_accounts_scope"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    counterparty_key = db.Column(db.String(36), nullable=False, default="")

    balance_cents = db.Column(db.BigInteger, nullable=False, default=0)
    total_credits_cents = db.Column(db.BigInteger, nullable=False, default=0)
    total_debits_cents = db.Column(db.BigInteger, nullable=False, default=0)
    entry_count = db.Column(db.Integer, nullable=False, default=0)
    last_entry_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def counterparty_id(self) -> str | None:
        return self.counterparty_key or None


class LedgerEntry(db.Model):
    """
    One khatabook row in a per-user append-only ledger.

    INVARIANTS:
    - Within a scope, sequence is 1, 2, 3, ... in insertion order.
    - balance_cents of entry N == balance_cents of entry N-1 + amount (CREDIT)
      or - amount (DEBIT).
    - Rows are never updated or deleted; corrections are new offsetting rows.
    """
    __tablename__ = "khatabook"
    __table_args__ = (
        db.UniqueConstraint("account_id", "sequence", name="uq_khatabook_account_sequence"),
        db.Index("ix_khatabook_user_counterparty", "user_id", "counterparty_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("ledger_accounts.id"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)

    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    counterparty_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=True, index=True)

    entry_type = db.Column(db.String(8), nullable=False)  # CREDIT, DEBIT
    transaction_type = db.Column(db.String(32), nullable=False, index=True)
    amount_cents = db.Column(db.BigInteger, nullable=False)
    balance_cents = db.Column(db.BigInteger, nullable=False)  # running balance after this entry

    description = db.Column(db.Text, nullable=False)
    reference_id = db.Column(db.String(64), nullable=True)
    metadata_json = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    account = db.relationship("LedgerAccount", backref=db.backref("entries", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "counterparty_id": self.counterparty_id,
            "order_id": self.order_id,
            "entry_type": self.entry_type,
            "transaction_type": self.transaction_type,
            "amount_cents": self.amount_cents,
            "balance_cents": self.balance_cents,
            "description": self.description,
            "reference_id": self.reference_id,
            "metadata": self.metadata_json,
            "sequence": self.sequence,
            "created_at": to_utc_z(self.created_at),
        }
