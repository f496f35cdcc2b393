"""
Pytest fixtures for gymdesk backend tests.

Provides test database setup, tenant fixtures (two organizations, branches,
staff users), catalog fixtures and an authenticated test client.
"""

from datetime import date, timedelta

import pytest

from gymdesk import create_app
from gymdesk.extensions import db
from gymdesk.models import Organization, Branch, User, MembershipPlan, BenefitDefinition, Coupon, Member
from gymdesk.services.auth_service import hash_password
from gymdesk.services.tenant_service import TenantContext
from gymdesk.time_utils import utcnow


TEST_PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'PAYMENT_WEBHOOK_SECRET': None,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


# =============================================================================
# TENANTS
# =============================================================================

@pytest.fixture(scope='function')
def org_a(db_session):
    """Create Organization A (first tenant)."""
    org = Organization(name="Org A - Iron Temple", code="IRON", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def org_b(db_session):
    """Create Organization B (second tenant)."""
    org = Organization(name="Org B - Flex Hub", code="FLEX", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def branch_a(db_session, org_a):
    branch = Branch(org_id=org_a.id, name="Koramangala", code="A1")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def branch_a2(db_session, org_a):
    branch = Branch(org_id=org_a.id, name="Indiranagar", code="A2")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def branch_b(db_session, org_b):
    branch = Branch(org_id=org_b.id, name="Andheri", code="B1")
    db_session.add(branch)
    db_session.commit()
    return branch


def make_user(db_session, org, username, role, branch=None) -> User:
    user = User(
        org_id=org.id,
        branch_id=branch.id if branch else None,
        username=username,
        email=f"{username}@example.com",
        password_hash=hash_password(TEST_PASSWORD),
        role=role,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin_a(db_session, org_a):
    """Tenant-wide admin in Organization A."""
    return make_user(db_session, org_a, "admin_a", "admin")


@pytest.fixture(scope='function')
def manager_a(db_session, org_a, branch_a):
    return make_user(db_session, org_a, "manager_a", "manager", branch_a)


@pytest.fixture(scope='function')
def front_desk_a(db_session, org_a, branch_a):
    return make_user(db_session, org_a, "desk_a", "front_desk", branch_a)


@pytest.fixture(scope='function')
def admin_b(db_session, org_b):
    return make_user(db_session, org_b, "admin_b", "admin")


@pytest.fixture(scope='function')
def ctx_a(org_a, branch_a, manager_a):
    """Branch-pinned caller in Organization A."""
    return TenantContext(org_id=org_a.id, branch_id=branch_a.id, user_id=manager_a.id)


@pytest.fixture(scope='function')
def ctx_a2(org_a, branch_a2):
    """Caller pinned to the second branch of Organization A."""
    return TenantContext(org_id=org_a.id, branch_id=branch_a2.id, user_id=None)


@pytest.fixture(scope='function')
def ctx_b(org_b, branch_b, admin_b):
    return TenantContext(org_id=org_b.id, branch_id=branch_b.id, user_id=admin_b.id)


# =============================================================================
# CATALOG
# =============================================================================

def make_plan(db_session, org, *, branch=None, name="Gold Monthly", price_cents=250000,
              setup_fee_cents=0, duration_days=30, benefits=()) -> MembershipPlan:
    plan = MembershipPlan(
        org_id=org.id,
        branch_id=branch.id if branch else None,
        name=name,
        price_cents=price_cents,
        setup_fee_cents=setup_fee_cents,
        duration_days=duration_days,
        status="ACTIVE",
    )
    db_session.add(plan)
    db_session.flush()
    for benefit in benefits:
        db_session.add(BenefitDefinition(org_id=org.id, plan_id=plan.id, **benefit))
    db_session.commit()
    return plan


def make_coupon(db_session, org, *, code="NEWYEAR10", branch=None, discount_type="PERCENTAGE",
                discount_value=1000, max_usage_count=None, current_usage_count=0,
                min_purchase_cents=None, applicable_plan_ids=None, status="ACTIVE",
                valid_from=None, valid_until=None) -> Coupon:
    now = utcnow()
    coupon = Coupon(
        org_id=org.id,
        branch_id=branch.id if branch else None,
        code=code,
        name=code.title(),
        discount_type=discount_type,
        discount_value=discount_value,
        valid_from=valid_from or now - timedelta(days=1),
        valid_until=valid_until or now + timedelta(days=30),
        max_usage_count=max_usage_count,
        current_usage_count=current_usage_count,
        min_purchase_cents=min_purchase_cents,
        applicable_plan_ids=applicable_plan_ids or [],
        status=status,
    )
    db_session.add(coupon)
    db_session.commit()
    return coupon


@pytest.fixture(scope='function')
def plan_a(db_session, org_a):
    """Tenant-wide plan with two benefits in Organization A."""
    return make_plan(
        db_session,
        org_a,
        setup_fee_cents=50000,
        benefits=[
            {"benefit_type": "GUEST_PASS", "name": "Guest pass", "accrual_quantity": 2,
             "accrual_type": "MONTHLY", "max_balance": 6},
            {"benefit_type": "PT_SESSION", "name": "Personal training", "accrual_quantity": 4,
             "accrual_type": "ONE_TIME", "expiry_days": 90},
        ],
    )


def member_details(suffix: str = "1") -> dict:
    return {
        "first_name": "Asha",
        "last_name": f"Rao{suffix}",
        "phone": f"98765432{suffix.zfill(2)[-2:]}",
        "email": f"asha{suffix}@example.com",
    }


START_DATE = date(2024, 1, 15)


def make_member(db_session, org, *, branch=None, suffix="1") -> Member:
    details = member_details(suffix)
    member = Member(
        org_id=org.id,
        branch_id=branch.id if branch else None,
        membership_code=f"MEM-20240115-TEST{suffix.zfill(4)}",
        status="ACTIVE",
        join_date=START_DATE,
        **details,
    )
    db_session.add(member)
    db_session.commit()
    return member


# =============================================================================
# HTTP HELPERS
# =============================================================================

def get_auth_token(client, username: str, password: str = TEST_PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(client, admin_a):
    return auth_headers(get_auth_token(client, admin_a.username))


@pytest.fixture(scope='function')
def manager_headers(client, manager_a):
    return auth_headers(get_auth_token(client, manager_a.username))


@pytest.fixture(scope='function')
def front_desk_headers(client, front_desk_a):
    return auth_headers(get_auth_token(client, front_desk_a.username))


@pytest.fixture(scope='function')
def admin_b_headers(client, admin_b):
    return auth_headers(get_auth_token(client, admin_b.username))
