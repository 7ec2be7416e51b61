"""Unit-of-work helpers around the SQLAlchemy session.

Transition operations only mutate entities in the session; committing them
(and mapping optimistic-concurrency failures to ``CONFLICT``) happens here.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import ConcurrencyError, ErrorKind, InfrastructureError, Result
from .events import EventSink

logger = logging.getLogger("qms-core.persistence")


@contextmanager
def infrastructure_guard(action: str) -> Iterator[None]:
    """
    Re-raise database failures as core exceptions.

    Args:
        action: Short description of what was being done, for logs

    Raises:
        ConcurrencyError: If a flush in the block finds a stale version
        InfrastructureError: If the wrapped block raises any other SQLAlchemyError
    """
    try:
        yield
    except StaleDataError as e:
        logger.warning(f"Concurrent modification while {action}: {e}")
        raise ConcurrencyError(f"Concurrent modification while {action}", action=action) from e
    except SQLAlchemyError as e:
        logger.error(f"Database failure while {action}: {e}")
        raise InfrastructureError(f"Database failure while {action}", action=action) from e


def commit_transition(db: Session, result: Result, sink: Optional[EventSink] = None) -> Result:
    """
    Commit a successful transition and publish its events.

    Failed results are returned unchanged and nothing is committed. A
    concurrent modification detected through the entity's version column is
    rolled back and reported as CONFLICT.

    Args:
        db: Database session holding the mutated entity and dependent rows
        result: Result returned by a transition operation
        sink: Optional event sink, called only after a successful commit

    Returns:
        The given result on success, a CONFLICT failure on a lost race

    Raises:
        InfrastructureError: For any other database failure
    """
    if not result.ok:
        return result

    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning(f"Concurrent modification detected, transition rolled back: {e}")
        return Result.failure(ErrorKind.CONFLICT, reason="stale_version")
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Failed to commit transition")
        raise InfrastructureError("Failed to commit transition", action="commit") from e

    if sink is not None and result.events:
        sink.publish(result.events)

    return result
