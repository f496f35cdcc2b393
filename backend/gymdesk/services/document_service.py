# Overview: Service-layer operations for document numbering; atomic per-tenant sequences.

from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..models import DocumentSequence
from gymdesk.time_utils import utctoday


DOCUMENT_TYPE_INVOICE = "INVOICE"
DOCUMENT_TYPE_CREDIT_NOTE = "CREDIT_NOTE"

DOCUMENT_PREFIXES = {
    DOCUMENT_TYPE_INVOICE: "INV",
    DOCUMENT_TYPE_CREDIT_NOTE: "CN",
}


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _allocate(org_id: int, document_type: str) -> int:
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.org_id == org_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(org_id=org_id, document_type=document_type)
            .scalar()
        )
        return current - 1

    # First document of this type for the tenant. A concurrent creator makes
    # this flush raise IntegrityError; the caller's unit of work is retried.
    seq = DocumentSequence(org_id=org_id, document_type=document_type, next_number=2)
    db.session.add(seq)
    db.session.flush()
    return 1


def next_document_number(*, org_id: int, document_type: str, year: int | None = None, pad: int = 6) -> str:
    """
    Allocate the next document number for a tenant, e.g. INV-2024-000123.

    Runs inside the caller's transaction: the number is only consumed if the
    document that uses it commits. Numbers are sequential per tenant and type,
    the year component is the issue year.
    """
    if not org_id:
        raise DocumentSequenceError("org_id is required")
    prefix = DOCUMENT_PREFIXES.get(document_type)
    if not prefix:
        raise DocumentSequenceError(f"Unknown document type: {document_type}")

    number = _allocate(org_id, document_type)
    year = year or utctoday().year
    return f"{prefix}-{year}-{number:0{pad}d}"
