import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from runpool.core.config import settings
from runpool.core.errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_store_retry(
    db: Session,
    fn: Callable[[], T],
    attempts: int | None = None,
    backoff: float | None = None,
) -> T:
    """Run ``fn`` retrying on connection/lock failures.

    Only reads and idempotent mutations go through here (token consumption,
    admission, initiate, reconcile). The session is rolled back between
    attempts so ``fn`` always starts from a clean transaction.
    """
    attempts = attempts or settings.STORE_RETRY_ATTEMPTS
    backoff = settings.STORE_RETRY_BACKOFF if backoff is None else backoff

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except OperationalError as e:
            db.rollback()
            if attempt == attempts:
                logger.error("store failure after %d attempts: %s", attempts, e.orig)
                raise TransientStoreError() from e
            logger.warning("transient store failure (attempt %d/%d): %s", attempt, attempts, e.orig)
            time.sleep(backoff * (2 ** (attempt - 1)))

    raise TransientStoreError()  # attempts == 0
