"""Shared plumbing for engine services"""

from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

from sqlalchemy.orm import Session

from receivables_engine.utils.date_utils import utcnow

Clock = Callable[[], datetime]


class BaseService:
    """
    Base for services whose public methods are each one unit of work.

    A unit of work writes a single aggregate plus the outbox events it
    raised, then commits. Any exception rolls the session back before it
    propagates, so a refused action never leaves partial writes behind.
    """

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or utcnow

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
