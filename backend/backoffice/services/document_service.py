# Overview: Service-layer operations for document numbering; atomic per-day sequences.

from __future__ import annotations

from datetime import date

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ValidationError
from ..extensions import db
from ..models import DocumentSequence
from .concurrency import run_guarded

CONSIGNMENT_DOCUMENT = "CONSIGNMENT"


def _current_number(document_type: str, period: str) -> int:
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type, period=period)
        .scalar()
    )
    return current - 1


def next_document_number(
    *,
    document_type: str,
    period: str,
    prefix: str,
    pad: int = 4,
) -> str:
    """
    Atomically allocate the next document number for a type/period.

    The increment is a single UPDATE ... SET next_number = next_number + 1 so
    two requests never read the same value. The first allocation of a period
    inserts the row; losing that insert race falls back to the UPDATE.

    Flushes only; the caller commits together with the document it numbers,
    so it must be called before anything else is added to the session.
    """
    def _op() -> str:
        if not document_type:
            raise ValidationError("document_type is required")
        if not period:
            raise ValidationError("period is required")

        stmt = (
            update(DocumentSequence)
            .where(
                DocumentSequence.document_type == document_type,
                DocumentSequence.period == period,
            )
            .values(next_number=DocumentSequence.next_number + 1)
        )

        result = db.session.execute(stmt)
        if result.rowcount:
            db.session.flush()
            next_num = _current_number(document_type, period)
        else:
            seq = DocumentSequence(document_type=document_type, period=period, next_number=2)
            db.session.add(seq)
            try:
                db.session.flush()
                next_num = 1
            except IntegrityError:
                db.session.rollback()
                result = db.session.execute(stmt)
                if not result.rowcount:
                    raise
                db.session.flush()
                next_num = _current_number(document_type, period)

        return f"{prefix}-{period}-{next_num:0{pad}d}"

    return run_guarded(_op, entity=f"{document_type} sequence")


def next_consignment_code(consignment_date: date) -> str:
    """KON-YYYYMMDD-NNNN, numbered per calendar day."""
    prefix = current_app.config.get("CONSIGNMENT_CODE_PREFIX", "KON")
    return next_document_number(
        document_type=CONSIGNMENT_DOCUMENT,
        period=consignment_date.strftime("%Y%m%d"),
        prefix=prefix,
    )
