# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/khatabook/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Idempotent demo data: one retailer with a store and listings, one shop owner, one linked courier.
#
# Users (login is external; tokens are issued here):
# - python -m flask users list [--role RETAILER]
# - python -m flask users create --email r@example.com --name "Ravi Traders" --role RETAILER [--phone 98...]
# - python -m flask users issue-token r@example.com [--hours 24]
#   Prints a bearer token for the user (shown once, stored hashed).
#
# Couriers:
# - python -m flask couriers link retailer@example.com courier@example.com
#
# Ledger:
# - python -m flask ledger verify [--email someone@example.com]
#   Replay every account and check stamped balances, sequences and conservation.
# - python -m flask ledger totals
#
# Settlement maintenance:
# - python -m flask settlement expire-requests
#   Auto-reject PENDING payment change requests older than PAYMENT_CHANGE_REQUEST_TTL_MINUTES.

import click
from flask.cli import with_appcontext

from .errors import OrderFlowError
from .extensions import db
from .models import Listing, Store, User
from .models.users import ROLE_DELIVERY_BOY, ROLE_RETAILER, ROLE_SHOP_OWNER, VALID_ROLES
from .services import courier_service, ledger_service, session_service, settlement_service
from .validation import format_rupees


def _user_by_email(email: str) -> User:
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if not user:
        raise click.ClickException(f"No user with email {email}")
    return user


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create demo users, a store with listings, and a courier link (idempotent)."""
    people = [
        ("retailer@khatabook.local", "Ravi Traders", ROLE_RETAILER, "9800000001"),
        ("owner@khatabook.local", "Sharma General Store", ROLE_SHOP_OWNER, "9800000002"),
        ("courier@khatabook.local", "Arjun", ROLE_DELIVERY_BOY, "9800000003"),
    ]
    users = {}
    for email, name, role, phone in people:
        user = db.session.query(User).filter_by(email=email).first()
        if not user:
            user = User(email=email, full_name=name, role=role, phone=phone)
            db.session.add(user)
            db.session.flush()
            click.echo(f"PASS Created {role} {email}")
        users[role] = user

    retailer = users[ROLE_RETAILER]
    store = db.session.query(Store).filter_by(owner_id=retailer.id).first()
    if not store:
        store = Store(owner_id=retailer.id, name="Ravi Wholesale", city="Pune")
        db.session.add(store)
        db.session.flush()
        for name, unit, price in [("Basmati Rice 25kg", "bag", 180000), ("Sunflower Oil 15L", "tin", 210000), ("Sugar 50kg", "bag", 225000)]:
            db.session.add(Listing(store_id=store.id, name=name, unit=unit, price_retail_cents=price))
        click.echo(f"PASS Created store {store.name} with listings")
    db.session.commit()

    courier_service.link_courier(retailer.id, users[ROLE_DELIVERY_BOY].id)
    click.echo("PASS Demo data ready. Issue tokens with 'python -m flask users issue-token <email>'.")


# =============================================================================
# USERS
# =============================================================================

@click.group('users')
def users_group():
    """User inspection and token commands."""


@users_group.command('list')
@click.option('--role', type=click.Choice(VALID_ROLES), help='Filter by role')
@with_appcontext
def list_users(role):
    """List all users with their roles."""
    query = db.session.query(User)
    if role:
        query = query.filter_by(role=role)
    users = query.order_by(User.created_at).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<38} {'Email':<30} {'Role':<14} {'Active'}")
    click.echo("="*100)
    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<38} {user.email:<30} {user.role:<14} {active_str}")
    click.echo("="*100 + "\n")


@users_group.command('create')
@click.option('--email', prompt=True)
@click.option('--name', 'full_name', prompt=True)
@click.option('--role', type=click.Choice(VALID_ROLES), prompt=True)
@click.option('--phone', default=None)
@with_appcontext
def create_user(email, full_name, role, phone):
    """Create a user."""
    email = email.strip().lower()
    if db.session.query(User).filter_by(email=email).first():
        raise click.ClickException(f"User {email} already exists")
    user = User(email=email, full_name=full_name.strip(), role=role, phone=phone)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created {role} {email} (ID: {user.id})")


@users_group.command('issue-token')
@click.argument('email')
@click.option('--hours', type=int, default=None, help='Token lifetime (defaults to SESSION_TTL_HOURS)')
@with_appcontext
def issue_token(email, hours):
    """Issue a bearer token for a user."""
    user = _user_by_email(email)
    try:
        session, token = session_service.create_session(user.id, ttl_hours=hours)
    except OrderFlowError as exc:
        raise click.ClickException(exc.message)
    click.echo(f"PASS Token for {user.email} (expires {session.expires_at.isoformat()}Z):")
    click.echo(token)


# =============================================================================
# COURIERS
# =============================================================================

@click.group('couriers')
def couriers_group():
    """Retailer <-> courier links."""


@couriers_group.command('link')
@click.argument('retailer_email')
@click.argument('courier_email')
@with_appcontext
def link_courier(retailer_email, courier_email):
    retailer = _user_by_email(retailer_email)
    courier = _user_by_email(courier_email)
    if retailer.role != ROLE_RETAILER:
        raise click.ClickException(f"{retailer.email} is not a retailer")
    try:
        courier_service.link_courier(retailer.id, courier.id)
    except OrderFlowError as exc:
        raise click.ClickException(exc.message)
    click.echo(f"PASS Linked {courier.email} to {retailer.email}")


# =============================================================================
# LEDGER
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Khatabook inspection commands."""


@ledger_group.command('verify')
@click.option('--email', default=None, help='Only verify this user\'s accounts')
@with_appcontext
def verify_ledger(email):
    """Replay ledger accounts and report any drift."""
    user_id = _user_by_email(email).id if email else None
    report = ledger_service.verify_ledger(user_id)

    if report["ok"]:
        click.echo(f"PASS {report['accounts']} account(s) consistent")
        return

    for problem in report["problems"]:
        click.echo(f"FAIL {problem}")
    raise click.ClickException(f"{len(report['problems'])} problem(s) in {report['accounts']} account(s)")


@ledger_group.command('totals')
@with_appcontext
def ledger_totals():
    totals = ledger_service.get_account_totals()
    for role, row in totals["roles"].items():
        click.echo(
            f"{role:<12} users={row['users']:<5} balance={format_rupees(row['balance_cents']):<16} "
            f"credits={format_rupees(row['total_credits_cents']):<16} debits={format_rupees(row['total_debits_cents'])}"
        )
    click.echo(f"System net: {format_rupees(totals['system_net_balance_cents'])} over {totals['total_entries']} entries")


# =============================================================================
# SETTLEMENT
# =============================================================================

@click.group('settlement')
def settlement_group():
    """Payment settlement maintenance."""


@settlement_group.command('expire-requests')
@with_appcontext
def expire_requests():
    """Auto-reject stale PENDING payment change requests."""
    count = settlement_service.expire_stale_requests()
    click.echo(f"PASS Expired {count} payment change request(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(couriers_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(settlement_group)
