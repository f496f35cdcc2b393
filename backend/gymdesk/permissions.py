"""
Permission System Constants and Definitions

WHY: Centralized permission definitions ensure consistency across the application.
All permission codes and role mappings defined here.

DESIGN PRINCIPLES:
- Permissions are granular (one action per permission)
- Categories group related permissions for UI display
- Default role mappings follow principle of least privilege
- Admin has all permissions by default
"""

# =============================================================================
# PERMISSION CATEGORIES
# =============================================================================

class PermissionCategory:
    """Permission categories for organization."""
    MEMBERS = "MEMBERS"
    CATALOG = "CATALOG"
    BILLING = "BILLING"
    SYSTEM = "SYSTEM"


# =============================================================================
# PERMISSION DEFINITIONS
# =============================================================================

# Each permission is defined as: (code, name, description, category)
PERMISSION_DEFINITIONS = [
    # MEMBERS PERMISSIONS
    (
        "VIEW_MEMBERS",
        "View Members",
        "View members, memberships and benefit balances",
        PermissionCategory.MEMBERS
    ),
    (
        "CREATE_MEMBER",
        "Enroll Member",
        "Enroll new members into a plan",
        PermissionCategory.MEMBERS
    ),

    # CATALOG PERMISSIONS
    (
        "VIEW_PLANS",
        "View Plans",
        "View membership plans and their benefits",
        PermissionCategory.CATALOG
    ),
    (
        "MANAGE_PLANS",
        "Manage Plans",
        "Create plans and attach benefit definitions",
        PermissionCategory.CATALOG
    ),
    (
        "VIEW_COUPONS",
        "View Coupons",
        "View and validate coupon codes",
        PermissionCategory.CATALOG
    ),
    (
        "MANAGE_COUPONS",
        "Manage Coupons",
        "Create coupon codes",
        PermissionCategory.CATALOG
    ),

    # BILLING PERMISSIONS
    (
        "VIEW_INVOICES",
        "View Invoices",
        "View invoices, payments and refunds",
        PermissionCategory.BILLING
    ),
    (
        "CREATE_INVOICE",
        "Create Invoice",
        "Create ad-hoc DRAFT invoices",
        PermissionCategory.BILLING
    ),
    (
        "FINALIZE_INVOICE",
        "Finalize Invoice",
        "Move DRAFT invoices to SENT",
        PermissionCategory.BILLING
    ),
    (
        "RECORD_PAYMENT",
        "Record Payment",
        "Record full or partial payments against invoices",
        PermissionCategory.BILLING
    ),
    (
        "PROCESS_REFUND",
        "Process Refund",
        "Refund invoices and issue credit notes",
        PermissionCategory.BILLING
    ),

    # SYSTEM PERMISSIONS
    (
        "VIEW_AUDIT",
        "View Audit Log",
        "View the audit trail of state-changing operations",
        PermissionCategory.SYSTEM
    ),
]

ALL_PERMISSION_CODES = [code for code, _, _, _ in PERMISSION_DEFINITIONS]


# =============================================================================
# DEFAULT ROLE PERMISSIONS
# =============================================================================

DEFAULT_ROLE_PERMISSIONS = {
    "admin": list(ALL_PERMISSION_CODES),
    "manager": list(ALL_PERMISSION_CODES),
    "front_desk": [
        "VIEW_MEMBERS",
        "CREATE_MEMBER",
        "VIEW_PLANS",
        "VIEW_COUPONS",
        "VIEW_INVOICES",
        "RECORD_PAYMENT",
    ],
}


def get_role_permissions(role: str | None) -> set[str]:
    """Unknown roles get nothing (fail closed)."""
    return set(DEFAULT_ROLE_PERMISSIONS.get(role or "", []))


def user_has_permission(user, permission_code: str) -> bool:
    return permission_code in get_role_permissions(getattr(user, "role", None))
