"""
Order Number Sequence

Issues human-facing order numbers ``<PREFIX><YYYY><MM><seq>`` where
``seq`` restarts every calendar month (UTC). The counter is a database
row incremented with a single upsert statement, so numbers stay unique
across any number of service instances.
"""

import asyncio
import logging
from datetime import datetime
from functools import lru_cache
from typing import Callable, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.database import async_session_maker
from app.models import OrderCounter, utcnow
from app.services.errors import SequenceExhaustionError

logger = logging.getLogger(__name__)

# Dialects offering INSERT ... ON CONFLICT DO UPDATE ... RETURNING
_UPSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class SequenceGenerator:
    """Atomic, store-backed monthly order number sequence."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        prefix: Optional[str] = None,
        min_digits: Optional[int] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.session_maker = session_maker
        self.prefix = prefix or settings.order_number_prefix
        self.min_digits = min_digits or settings.order_number_min_digits
        self.timeout = timeout or settings.store_timeout_seconds
        self.clock = clock

    def bucket(self, now: Optional[datetime] = None) -> str:
        """Counter key for the month of ``now``, e.g. ``CN202610``."""
        now = now or self.clock()
        return f"{self.prefix}{now.year:04d}{now.month:02d}"

    def format_number(self, bucket: str, seq: int) -> str:
        return f"{bucket}{str(seq).zfill(self.min_digits)}"

    async def next_order_number(self) -> str:
        """
        Allocate the next order number of the current month.

        Raises:
            SequenceExhaustionError: counter store unreachable or too slow.
                No fallback number is ever produced.
        """
        bucket = self.bucket()
        try:
            seq = await asyncio.wait_for(self._increment(bucket), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Order counter {bucket} timed out after {self.timeout}s")
            raise SequenceExhaustionError() from e
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Order counter {bucket} failed: {e}")
            raise SequenceExhaustionError() from e

        return self.format_number(bucket, seq)

    async def _increment(self, bucket: str) -> int:
        async with self.session_maker() as session:
            dialect = session.get_bind().dialect.name
            insert = _UPSERTS.get(dialect)
            if insert is None:
                raise SQLAlchemyError(f"Dialect {dialect} has no atomic upsert")

            stmt = (
                insert(OrderCounter)
                .values(id=bucket, seq=1)
                .on_conflict_do_update(
                    index_elements=[OrderCounter.id],
                    set_={"seq": OrderCounter.seq + 1},
                )
                .returning(OrderCounter.seq)
            )
            result = await session.execute(stmt)
            seq = result.scalar_one()
            await session.commit()
            return seq


@lru_cache()
def get_sequence_generator() -> SequenceGenerator:
    """Shared generator bound to the application's session factory."""
    return SequenceGenerator(async_session_maker)
