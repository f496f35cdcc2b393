from .tenancy import Organization, Branch, DocumentSequence
from .auth import User, SessionToken
from .plans import MembershipPlan, BenefitDefinition, MemberBenefitBalance
from .members import Member, MemberMembership
from .coupons import Coupon, CouponUsage
from .invoices import Invoice, InvoiceItem, InvoicePayment, InvoiceRefund, PaymentGatewayLog
from .audit import AuditLog

__all__ = [
    'Organization', 'Branch', 'DocumentSequence',
    'User', 'SessionToken',
    'MembershipPlan', 'BenefitDefinition', 'MemberBenefitBalance',
    'Member', 'MemberMembership',
    'Coupon', 'CouponUsage',
    'Invoice', 'InvoiceItem', 'InvoicePayment', 'InvoiceRefund', 'PaymentGatewayLog',
    'AuditLog',
]
