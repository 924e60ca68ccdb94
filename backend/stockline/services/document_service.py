# Overview: Atomic document number allocation (invoice numbers).

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import day_key


INVOICE_DOCUMENT_TYPE = "INVOICE"


def _current_number(document_type: str, sequence_key: str) -> int:
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type, sequence_key=sequence_key)
        .scalar()
    )
    return current - 1


def next_sequence_number(*, document_type: str, sequence_key: str) -> int:
    """
    Atomically allocate the next number for (document_type, sequence_key).

    Runs inside the caller's transaction: the UPDATE takes the row lock, so
    concurrent allocators serialize and a rollback returns the number.
    When the row does not exist yet it is inserted under a savepoint; if a
    concurrent writer created it first, the UPDATE path is retried.
    """
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.sequence_key == sequence_key,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        return _current_number(document_type, sequence_key)

    try:
        with db.session.begin_nested():
            db.session.add(DocumentSequence(
                document_type=document_type,
                sequence_key=sequence_key,
                next_number=2,
            ))
        return 1
    except IntegrityError:
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        return _current_number(document_type, sequence_key)


def next_invoice_number(*, prefix: str = "INV", now: datetime | None = None, pad: int = 3) -> str:
    """INV-YYYYMMDD-NNN, restarting at 001 each day."""
    key = day_key(now)
    number = next_sequence_number(document_type=INVOICE_DOCUMENT_TYPE, sequence_key=key)
    return f"{prefix}-{key}-{number:0{pad}d}"
