"""Transaction scope shared by every engine operation."""

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from nebula_core.errors import Internal, NebulaError

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(db: Session, operation: str, **context: Any) -> Iterator[Session]:
    """
    Run one engine operation as a single transaction.

    Commits on success. Any exception rolls back everything written inside the
    block; anything that is not already a NebulaError is re-raised as `Internal`
    with the given context.
    """
    try:
        yield db
        db.commit()
    except NebulaError as e:
        db.rollback()
        logger.info(
            f"{operation} rejected: {e.kind}",
            extra={"operation": operation, "kind": e.kind, **e.context},
        )
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"{operation} failed: {type(e).__name__}",
            extra={"operation": operation, **context},
            exc_info=True,
        )
        raise Internal(f"Persistence failure during {operation}", **context) from e
    except Exception as e:
        db.rollback()
        logger.error(
            f"{operation} failed unexpectedly: {type(e).__name__}",
            extra={"operation": operation, **context},
            exc_info=True,
        )
        raise Internal(f"Unexpected failure during {operation}", **context) from e


def find_or_create(db: Session, model, defaults: dict[str, Any] | None = None, **lookup: Any):
    """
    Return `(row, created)` for the row matching `lookup`.

    The insert runs inside a SAVEPOINT and relies on the table's unique
    constraint: a concurrent writer that wins the race makes our insert fail with
    IntegrityError, which only rolls back the savepoint, and we read their row.
    """
    existing = db.query(model).filter_by(**lookup).first()
    if existing is not None:
        return existing, False

    try:
        with db.begin_nested():
            row = model(**lookup, **(defaults or {}))
            db.add(row)
        return row, True
    except IntegrityError:
        logger.debug(
            f"find_or_create lost race on {model.__tablename__}",
            extra={"table": model.__tablename__},
        )
        return db.query(model).filter_by(**lookup).one(), False
