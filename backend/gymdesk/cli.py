# Overview: Flask CLI command groups for bootstrap and inspection.

# backend/gymdesk/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--org "Iron Temple"] [--org-code IRON]
#   Idempotent bootstrap: tenant, main branch and one staff user per role.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Tenants:
# - python -m flask orgs list
# - python -m flask orgs create --name "Iron Temple" --code "IRON"
# - python -m flask orgs add-branch --org-id 1 --name "Indiranagar" --code "A2"
#
# Staff:
# - python -m flask users list [--org-id 1]
# - python -m flask users create --org-id 1 [--branch-id 2] --username desk --email desk@gym.local --role front_desk
#
# Catalog:
# - python -m flask plans list [--org-id 1]
# - python -m flask coupons list [--org-id 1]

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Branch, Coupon, MembershipPlan, Organization, User
from .services.auth_service import create_user, PasswordValidationError, VALID_ROLES
from .services.money import format_cents
from .services.tenant_service import get_org_branches


DEFAULT_PASSWORD = "Password123!"

# (username, role, pinned to the main branch)
DEFAULT_STAFF = [
    ("admin", "admin", False),
    ("manager", "manager", True),
    ("frontdesk", "front_desk", True),
]


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--org', 'org_name', default='Default Gym', help='Organization name')
@click.option('--org-code', default='DEFAULT', help='Organization code')
@with_appcontext
def init_system(org_name, org_code):
    """
    Bootstrap a tenant with a main branch and one user per role.

    The admin is tenant-wide; manager and front desk are pinned to the main
    branch. Every account gets the default password.

    SECURITY: Change passwords immediately in production!
    """
    org = db.session.query(Organization).filter_by(code=org_code).first()
    if org is None:
        org = Organization(name=org_name, code=org_code, is_active=True)
        db.session.add(org)
        db.session.commit()
        click.echo(f"PASS Created organization {org.code} (ID: {org.id})")

    branch = db.session.query(Branch).filter_by(org_id=org.id, code="MAIN").first()
    if branch is None:
        branch = Branch(org_id=org.id, name="Main Branch", code="MAIN")
        db.session.add(branch)
        db.session.commit()
        click.echo(f"PASS Created branch {branch.name} (ID: {branch.id})")

    for username, role, pinned in DEFAULT_STAFF:
        if db.session.query(User).filter_by(org_id=org.id, username=username).first():
            click.echo(f"SKIP User '{username}' exists")
            continue
        try:
            create_user(
                username=username,
                email=f"{username}@{org.code.lower()}.gymdesk.local",
                password=DEFAULT_PASSWORD,
                org_id=org.id,
                branch_id=branch.id if pinned else None,
                role=role,
            )
            click.echo(f"PASS Created {role} '{username}'")
        except (PasswordValidationError, ValueError) as e:
            db.session.rollback()
            click.echo(f"FAIL Could not create '{username}': {e}")

    click.echo(f"DONE Tenant {org.code} ready. Default password: {DEFAULT_PASSWORD} (CHANGE IN PRODUCTION!)")


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

    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset. Run 'python -m flask system init' to bootstrap.")


# =============================================================================
# TENANTS
# =============================================================================

@click.group('orgs')
def orgs_group():
    """Organization (tenant) management commands."""


@orgs_group.command('list')
@with_appcontext
def list_orgs():
    orgs = db.session.query(Organization).order_by(Organization.id).all()
    if not orgs:
        click.echo("No organizations found.")
        return

    for org in orgs:
        branches = get_org_branches(org.id, active_only=False)
        state = "active" if org.is_active else "INACTIVE"
        names = ", ".join(b.name for b in branches) or "-"
        click.echo(f"[{org.id}] {org.code} {org.name} ({state}) branches: {names}")


@orgs_group.command('create')
@click.option('--name', required=True, help='Organization name')
@click.option('--code', required=True, help='Short code (unique)')
@with_appcontext
def create_org_cli(name, code):
    """Create a new organization (tenant)."""
    if db.session.query(Organization).filter_by(code=code).first():
        raise click.ClickException(f"Organization with code '{code}' already exists")

    org = Organization(name=name, code=code, is_active=True)
    db.session.add(org)
    db.session.commit()
    click.echo(f"PASS Created organization {org.code} (ID: {org.id})")


@orgs_group.command('add-branch')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--name', required=True, help='Branch name')
@click.option('--code', help='Branch code (unique within org)')
@with_appcontext
def add_branch_cli(org_id, name, code):
    org = db.session.get(Organization, org_id)
    if not org:
        raise click.ClickException(f"Organization ID {org_id} not found")
    if db.session.query(Branch).filter_by(org_id=org_id, name=name).first():
        raise click.ClickException(f"Branch '{name}' already exists in {org.code}")

    branch = Branch(org_id=org_id, name=name, code=code)
    db.session.add(branch)
    db.session.commit()
    click.echo(f"PASS Created branch {branch.name} (ID: {branch.id}) in {org.code}")


# =============================================================================
# STAFF
# =============================================================================

@click.group('users')
def users_group():
    """Staff account commands."""


@users_group.command('create')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--branch-id', type=int, help='Pin the user to a branch (omit for tenant-wide staff)')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(VALID_ROLES), prompt=True, help='Role')
@with_appcontext
def create_user_cli(org_id, branch_id, username, email, password, role):
    """
    Create a staff user inside one organization.

    Password must be 8+ characters with upper, lower, digit and special.
    """
    try:
        user = create_user(
            username=username,
            email=email,
            password=password,
            org_id=org_id,
            branch_id=branch_id,
            role=role,
        )
    except PasswordValidationError as e:
        raise click.ClickException(f"Password validation failed: {e}")
    except ValueError as e:
        raise click.ClickException(str(e))

    click.echo(f"PASS Created {role} '{user.username}' (org {user.org_id}, branch {user.branch_id or 'all'})")


@users_group.command('list')
@click.option('--org-id', type=int, help='Filter by organization ID')
@with_appcontext
def list_users(org_id):
    query = db.session.query(User)
    if org_id:
        query = query.filter_by(org_id=org_id)

    users = query.order_by(User.org_id, User.id).all()
    if not users:
        click.echo("No users found.")
        return

    for user in users:
        flag = "" if user.is_active else " (disabled)"
        click.echo(
            f"[{user.id}] org {user.org_id} branch {user.branch_id or 'all'}: "
            f"{user.username} <{user.email}> {user.role}{flag}"
        )


# =============================================================================
# CATALOG
# =============================================================================

@click.group('plans')
def plans_group():
    """Membership plan inspection commands."""


@plans_group.command('list')
@click.option('--org-id', type=int, help='Filter by organization ID')
@with_appcontext
def list_plans_cli(org_id):
    """List membership plans with their benefit definitions."""
    query = db.session.query(MembershipPlan)
    if org_id:
        query = query.filter_by(org_id=org_id)

    plans = query.order_by(MembershipPlan.org_id, MembershipPlan.name).all()
    if not plans:
        click.echo("No plans found.")
        return

    for plan in plans:
        scope = f"branch {plan.branch_id}" if plan.branch_id else "tenant-wide"
        click.echo(
            f"[{plan.id}] {plan.name} ({plan.status}, org {plan.org_id}, {scope}) "
            f"price={format_cents(plan.price_cents)} setup={format_cents(plan.setup_fee_cents)} "
            f"days={plan.duration_days}"
        )
        for benefit in plan.benefits:
            flag = "" if benefit.is_active else " (inactive)"
            click.echo(
                f"    - {benefit.name}: {benefit.accrual_quantity} {benefit.accrual_type or ''} "
                f"max={benefit.max_balance or '-'}{flag}"
            )


@click.group('coupons')
def coupons_group():
    """Coupon inspection commands."""


@coupons_group.command('list')
@click.option('--org-id', type=int, help='Filter by organization ID')
@with_appcontext
def list_coupons_cli(org_id):
    query = db.session.query(Coupon)
    if org_id:
        query = query.filter_by(org_id=org_id)

    coupons = query.order_by(Coupon.org_id, Coupon.code).all()
    if not coupons:
        click.echo("No coupons found.")
        return

    for coupon in coupons:
        if coupon.discount_type == "PERCENTAGE":
            value = f"{coupon.discount_value / 100:g}%"
        else:
            value = format_cents(coupon.discount_value)
        cap = coupon.max_usage_count if coupon.max_usage_count is not None else "unlimited"
        click.echo(
            f"[{coupon.id}] {coupon.code} {value} ({coupon.status}, org {coupon.org_id}) "
            f"used {coupon.current_usage_count}/{cap}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orgs_group)
    app.cli.add_command(users_group)
    app.cli.add_command(plans_group)
    app.cli.add_command(coupons_group)
