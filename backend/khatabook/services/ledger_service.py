# Overview: Service-layer operations for the khatabook ledger; append-only entries with stamped running balances.

"""
Khatabook Ledger Invariants (authoritative)

- Each user has one append-only ledger per counterparty scope (LedgerAccount).
- balance of entry N == balance of entry N-1 + amount (CREDIT) or - amount (DEBIT).
- A user's balance toward a counterparty is positive when the counterparty owes them.
- Money only moves between two parties through transfer(), which posts the
  DEBIT on one side and the mirrored CREDIT on the other in the same
  transaction. Their signed deltas always sum to zero.
- Entries are never updated or deleted; corrections are new offsetting entries.
- Nothing here commits. Callers own the transaction boundary.
"""

from __future__ import annotations

import math
from enum import Enum

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import ValidationError
from ..extensions import db
from ..models import LedgerAccount, LedgerEntry, User
from ..models.users import ROLE_RETAILER, ROLE_SHOP_OWNER
from ..time_utils import to_utc_z, utcnow
from ..validation import MAX_AMOUNT_CENTS, format_rupees
from .concurrency import ConcurrentWriteError, lock_for_update


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class TransactionType(str, Enum):
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_DEBIT = "ORDER_DEBIT"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PAYMENT_CREDIT = "PAYMENT_CREDIT"
    BALANCE_CLEAR_CREDIT = "BALANCE_CLEAR_CREDIT"
    PAYMENT_ADJUSTED = "PAYMENT_ADJUSTED"
    ADJUSTMENT = "ADJUSTMENT"
    REFUND = "REFUND"
    COMMISSION = "COMMISSION"


def _scope_key(counterparty_id: str | None) -> str:
    return counterparty_id or ""


def _validate_amount(amount_cents) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError("Ledger amount must be an integer number of paise")
    if amount_cents <= 0:
        raise ValidationError("Ledger amount must be positive")
    if amount_cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"Ledger amount cannot exceed {MAX_AMOUNT_CENTS}")
    return amount_cents


def _coerce_enum(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {field} '{value}'. Must be one of: {allowed}")


def _lock_account(user_id: str, counterparty_id: str | None) -> LedgerAccount:
    """
    Load the scope's account row FOR UPDATE, creating it on first posting.

    A concurrent first posting to the same scope loses on the unique
    constraint and surfaces as ConcurrentWriteError so run_with_retry
    replays the whole unit of work.
    """
    key = _scope_key(counterparty_id)
    query = db.session.query(LedgerAccount).filter_by(user_id=user_id, counterparty_key=key)
    account = lock_for_update(query).first()
    if account is not None:
        return account

    account = LedgerAccount(
        user_id=user_id,
        counterparty_key=key,
        balance_cents=0,
        total_credits_cents=0,
        total_debits_cents=0,
        entry_count=0,
    )
    db.session.add(account)
    try:
        db.session.flush()
    except IntegrityError as exc:
        raise ConcurrentWriteError(f"Ledger account for user {user_id} created concurrently") from exc
    return account


def post_entry(
    *,
    user_id: str,
    entry_type: EntryType | str,
    transaction_type: TransactionType | str,
    amount_cents: int,
    description: str,
    counterparty_id: str | None = None,
    order_id: str | None = None,
    reference_id: str | None = None,
    metadata: dict | None = None,
) -> LedgerEntry:
    """
    Append one entry to a user's ledger and stamp the running balance.

    The previous balance comes from the locked LedgerAccount row for the
    (user, counterparty) scope, so two concurrent postings to one scope
    cannot read the same stale tail.
    """
    amount_cents = _validate_amount(amount_cents)
    entry_type = _coerce_enum(EntryType, entry_type, "entry_type")
    transaction_type = _coerce_enum(TransactionType, transaction_type, "transaction_type")
    if not description or not description.strip():
        raise ValidationError("Ledger entry description is required")
    if counterparty_id is not None and counterparty_id == user_id:
        raise ValidationError("A ledger entry cannot name its own user as counterparty")

    account = _lock_account(user_id, counterparty_id)
    now = utcnow()

    if entry_type == EntryType.CREDIT:
        account.balance_cents += amount_cents
        account.total_credits_cents += amount_cents
    else:
        account.balance_cents -= amount_cents
        account.total_debits_cents += amount_cents
    account.entry_count += 1
    account.last_entry_at = now

    entry = LedgerEntry(
        account_id=account.id,
        sequence=account.entry_count,
        user_id=user_id,
        counterparty_id=counterparty_id,
        order_id=order_id,
        entry_type=entry_type.value,
        transaction_type=transaction_type.value,
        amount_cents=amount_cents,
        balance_cents=account.balance_cents,
        description=description.strip(),
        reference_id=reference_id,
        metadata_json=metadata,
        created_at=now,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def transfer(
    *,
    from_user_id: str,
    to_user_id: str,
    amount_cents: int,
    transaction_type: TransactionType | str,
    description: str,
    order_id: str | None = None,
    to_transaction_type: TransactionType | str | None = None,
    reference_id: str | None = None,
    metadata: dict | None = None,
) -> tuple[LedgerEntry, LedgerEntry]:
    """
    Move value between two parties: DEBIT from_user, CREDIT to_user.

    Both sides are posted in the caller's transaction with each other as
    counterparty. Accounts are locked in a stable order so two transfers
    between the same pair in opposite directions cannot deadlock.

    Returns (from_entry, to_entry).
    """
    if not from_user_id or not to_user_id:
        raise ValidationError("Both parties are required for a transfer")
    if from_user_id == to_user_id:
        raise ValidationError("Cannot transfer between a user and themselves")
    amount_cents = _validate_amount(amount_cents)

    for user_id, counterparty_id in sorted([(from_user_id, to_user_id), (to_user_id, from_user_id)]):
        _lock_account(user_id, counterparty_id)

    from_entry = post_entry(
        user_id=from_user_id,
        counterparty_id=to_user_id,
        order_id=order_id,
        entry_type=EntryType.DEBIT,
        transaction_type=transaction_type,
        amount_cents=amount_cents,
        description=description,
        reference_id=reference_id,
        metadata=metadata,
    )
    to_entry = post_entry(
        user_id=to_user_id,
        counterparty_id=from_user_id,
        order_id=order_id,
        entry_type=EntryType.CREDIT,
        transaction_type=to_transaction_type or transaction_type,
        amount_cents=amount_cents,
        description=description,
        reference_id=reference_id,
        metadata=metadata,
    )
    return from_entry, to_entry


# =============================================================================
# READS
# =============================================================================

def describe_balance(balance_cents: int) -> dict:
    """Human-readable direction of a balance from the ledger owner's side."""
    if balance_cents > 0:
        return {"status": "owed", "message": f"You are owed {format_rupees(balance_cents)}"}
    if balance_cents < 0:
        return {"status": "owing", "message": f"You owe {format_rupees(-balance_cents)}"}
    return {"status": "settled", "message": "All settled"}


def _get_account(user_id: str, counterparty_id: str | None) -> LedgerAccount | None:
    return db.session.query(LedgerAccount).filter_by(
        user_id=user_id,
        counterparty_key=_scope_key(counterparty_id),
    ).first()


def _recent_entries(query, limit: int) -> list[dict]:
    rows = query.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc()).limit(limit).all()
    return [row.to_dict() for row in rows]


def get_summary(user_id: str, counterparty_id: str | None = None) -> dict:
    """
    Balance summary for a user, overall or toward one counterparty.

    current_balance comes from the stamped account tails, never from a
    rescan of entries.
    """
    recent_limit = current_app.config.get("LEDGER_RECENT_TRANSACTIONS", 5)
    entries = db.session.query(LedgerEntry).filter(LedgerEntry.user_id == user_id)

    if counterparty_id:
        account = _get_account(user_id, counterparty_id)
        balance = account.balance_cents if account else 0
        credits = account.total_credits_cents if account else 0
        debits = account.total_debits_cents if account else 0
        count = account.entry_count if account else 0
        entries = entries.filter(LedgerEntry.counterparty_id == counterparty_id)
    else:
        balance, credits, debits, count = db.session.query(
            func.coalesce(func.sum(LedgerAccount.balance_cents), 0),
            func.coalesce(func.sum(LedgerAccount.total_credits_cents), 0),
            func.coalesce(func.sum(LedgerAccount.total_debits_cents), 0),
            func.coalesce(func.sum(LedgerAccount.entry_count), 0),
        ).filter(LedgerAccount.user_id == user_id).one()

    return {
        "user_id": user_id,
        "counterparty_id": counterparty_id,
        "current_balance_cents": int(balance),
        "total_credits_cents": int(credits),
        "total_debits_cents": int(debits),
        "total_transactions": int(count),
        "balance_status": describe_balance(int(balance)),
        "recent_transactions": _recent_entries(entries, recent_limit),
    }


def get_entries(
    user_id: str,
    *,
    page: int = 1,
    limit: int = 20,
    type: str | None = None,
    counterparty_id: str | None = None,
) -> dict:
    """Reverse-chronological page of a user's entries.

    `type` matches either an entry type (CREDIT/DEBIT) or a transaction type.
    """
    max_limit = current_app.config.get("LEDGER_PAGE_LIMIT_MAX", 100)
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 20), 1), max_limit)

    query = db.session.query(LedgerEntry).filter(LedgerEntry.user_id == user_id)
    if counterparty_id:
        query = query.filter(LedgerEntry.counterparty_id == counterparty_id)
    if type:
        wanted = type.strip().upper()
        if wanted in EntryType.__members__:
            query = query.filter(LedgerEntry.entry_type == wanted)
        elif wanted in TransactionType.__members__:
            query = query.filter(LedgerEntry.transaction_type == wanted)
        else:
            raise ValidationError(f"Unknown ledger entry type '{type}'")

    total = query.count()
    rows = (
        query.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "entries": [row.to_dict() for row in rows],
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if total else 0,
    }


def get_outstanding_balance(user_id: str, counterparty_id: str) -> int:
    account = _get_account(user_id, counterparty_id)
    return account.balance_cents if account else 0


def get_counterparty_balances(user_id: str, recent: int = 3) -> dict:
    """
    One row per trading partner with its balance, totals and latest entries.

    Serves both sides: a retailer sees the shop owners who owe it, a shop
    owner sees the retailers it owes.
    """
    accounts = (
        db.session.query(LedgerAccount)
        .filter(LedgerAccount.user_id == user_id, LedgerAccount.counterparty_key != "")
        .order_by(LedgerAccount.last_entry_at.desc())
        .all()
    )

    partner_ids = [a.counterparty_key for a in accounts]
    partners = {}
    if partner_ids:
        partners = {u.id: u for u in db.session.query(User).filter(User.id.in_(partner_ids)).all()}

    rows = []
    for account in accounts:
        partner = partners.get(account.counterparty_key)
        recent_entries = (
            db.session.query(LedgerEntry)
            .filter(LedgerEntry.account_id == account.id)
            .order_by(LedgerEntry.sequence.desc())
            .limit(recent)
            .all()
        )
        rows.append({
            "counterparty_id": account.counterparty_key,
            "counterparty_name": partner.full_name if partner else None,
            "counterparty_role": partner.role if partner else None,
            "balance_cents": account.balance_cents,
            "total_credits_cents": account.total_credits_cents,
            "total_debits_cents": account.total_debits_cents,
            "total_transactions": account.entry_count,
            "last_entry_at": to_utc_z(account.last_entry_at),
            "balance_status": describe_balance(account.balance_cents),
            "recent_entries": [e.to_dict() for e in recent_entries],
        })

    total_balance = sum(r["balance_cents"] for r in rows)
    return {
        "balances": rows,
        "totals": {
            "counterparties": len(rows),
            "balance_cents": total_balance,
            "receivable_cents": sum(r["balance_cents"] for r in rows if r["balance_cents"] > 0),
            "payable_cents": -sum(r["balance_cents"] for r in rows if r["balance_cents"] < 0),
            "total_credits_cents": sum(r["total_credits_cents"] for r in rows),
            "total_debits_cents": sum(r["total_debits_cents"] for r in rows),
            "balance_status": describe_balance(total_balance),
        },
    }


def get_account_totals() -> dict:
    """
    Platform-wide ledger totals per trading role.

    Because every posting is half of a transfer, system_net_balance_cents
    is 0 whenever the ledger is consistent.
    """
    by_role = {}
    for role in (ROLE_RETAILER, ROLE_SHOP_OWNER):
        balance, credits, debits, users = (
            db.session.query(
                func.coalesce(func.sum(LedgerAccount.balance_cents), 0),
                func.coalesce(func.sum(LedgerAccount.total_credits_cents), 0),
                func.coalesce(func.sum(LedgerAccount.total_debits_cents), 0),
                func.count(func.distinct(LedgerAccount.user_id)),
            )
            .join(User, User.id == LedgerAccount.user_id)
            .filter(User.role == role)
            .one()
        )
        by_role[role] = {
            "balance_cents": int(balance),
            "total_credits_cents": int(credits),
            "total_debits_cents": int(debits),
            "users": int(users),
        }

    net = db.session.query(func.coalesce(func.sum(LedgerAccount.balance_cents), 0)).scalar()
    entry_count = db.session.query(func.count(LedgerEntry.id)).scalar()
    return {
        "roles": by_role,
        "system_net_balance_cents": int(net),
        "total_entries": int(entry_count),
    }


# =============================================================================
# VERIFICATION
# =============================================================================

def verify_account(account: LedgerAccount) -> list[str]:
    """
    Replay one scope from its first entry and compare every stamped balance.

    Returns a list of problems (empty when the scope is consistent).
    """
    problems = []
    running = 0
    expected_sequence = 1
    entries = (
        db.session.query(LedgerEntry)
        .filter(LedgerEntry.account_id == account.id)
        .order_by(LedgerEntry.sequence.asc())
        .all()
    )
    for entry in entries:
        if entry.sequence != expected_sequence:
            problems.append(f"entry {entry.id}: sequence {entry.sequence}, expected {expected_sequence}")
        running += entry.amount_cents if entry.entry_type == EntryType.CREDIT.value else -entry.amount_cents
        if entry.balance_cents != running:
            problems.append(f"entry {entry.id}: stamped balance {entry.balance_cents}, replayed {running}")
        expected_sequence += 1

    if account.balance_cents != running:
        problems.append(f"account {account.id}: tail balance {account.balance_cents}, replayed {running}")
    if account.entry_count != len(entries):
        problems.append(f"account {account.id}: entry_count {account.entry_count}, found {len(entries)}")
    return problems


def verify_ledger(user_id: str | None = None) -> dict:
    query = db.session.query(LedgerAccount)
    if user_id:
        query = query.filter(LedgerAccount.user_id == user_id)

    report = {"accounts": 0, "problems": []}
    for account in query.order_by(LedgerAccount.id).all():
        report["accounts"] += 1
        report["problems"].extend(verify_account(account))

    if user_id is None:
        net = int(db.session.query(func.coalesce(func.sum(LedgerAccount.balance_cents), 0)).scalar())
        if net != 0:
            report["problems"].append(f"system net balance is {net}, expected 0")
    report["ok"] = not report["problems"]
    return report
