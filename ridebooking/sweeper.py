"""
Abandonment sweeper.

Pending bookings whose payment_timeout has passed are moved to 'abandoned'
and their seats go back to the schedule. The stored timeout is the source of
truth; ``arm`` only tells the background loop when to wake up early, so a
restart loses nothing but a little promptness.
"""

import asyncio
import heapq
import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from ridebooking import schedule_store
from ridebooking.models import ABANDONED, PAYMENT_FAILED, PENDING, Booking

logger = logging.getLogger(__name__)


class AbandonmentSweeper:
    def __init__(self, session_factory: sessionmaker, interval_seconds: int = 60,
                 clock: Callable[[], datetime] = datetime.now):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._armed = []  # heap of (fire_at, booking_id)
        self._lock = threading.Lock()

    def arm(self, booking_id: int, fire_at: datetime) -> None:
        with self._lock:
            heapq.heappush(self._armed, (fire_at, booking_id))

    def next_wakeup(self) -> Optional[datetime]:
        with self._lock:
            return self._armed[0][0] if self._armed else None

    def _disarm_due(self, now: datetime) -> None:
        with self._lock:
            while self._armed and self._armed[0][0] <= now:
                heapq.heappop(self._armed)

    def abandon(self, booking_id: int, now: Optional[datetime] = None) -> bool:
        """Abandon one booking if it is still pending; a booking that already moved on is left alone."""
        now = now or self.clock()
        with self.session_factory.begin() as db:
            return schedule_store.release_booking(
                db, booking_id, [PENDING], ABANDONED, payment_status=PAYMENT_FAILED, now=now
            )

    def sweep_abandoned(self, now: Optional[datetime] = None) -> List[int]:
        now = now or self.clock()
        with self.session_factory() as db:
            overdue = db.scalars(
                select(Booking.id)
                .where(Booking.status == PENDING, Booking.payment_timeout < now)
                .order_by(Booking.payment_timeout)
            ).all()

        released = []
        for booking_id in overdue:
            try:
                if self.abandon(booking_id, now):
                    released.append(booking_id)
            except Exception:
                logger.exception("Failed to abandon booking %s", booking_id)
        self._disarm_due(now)
        if released:
            logger.info("Sweep released %d abandoned booking(s): %s", len(released), released)
        return released

    def _seconds_until_next(self) -> float:
        wake = self.next_wakeup()
        delay = float(self.interval_seconds)
        if wake is not None:
            delay = min(delay, max((wake - self.clock()).total_seconds(), 0.0) + 1.0)
        return delay

    async def run(self) -> None:
        logger.info("Abandonment sweeper started (interval %ss)", self.interval_seconds)
        while True:
            try:
                # blocking DB work stays off the event loop
                await asyncio.to_thread(self.sweep_abandoned)
            except Exception:
                logger.exception("Sweep failed")
            await asyncio.sleep(self._seconds_until_next())
