"""Shared storage error handling for the service layer."""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

from paygate.errors import DatabaseError
from paygate.extensions import db

logger = logging.getLogger(__name__)


@contextmanager
def storage_errors(action):
    """Turn SQLAlchemy failures into DatabaseError.

    Rolls the session back first, so the caller's next statement starts
    from a clean transaction.
    """
    try:
        yield
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Database error while trying to {action}: {e}", exc_info=True)
        raise DatabaseError(f"Failed to {action}") from e
