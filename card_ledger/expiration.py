"""
Card Expiration Sweep

Moves every ACTIVE card whose expiration date has passed to EXPIRED in one
set-based update. Running it again for the same date changes nothing.
"""

from datetime import date, datetime, time, timedelta
from typing import Optional
import logging
import threading

from .cards import CardStatus
from .identity import Identity, Permission, require_permission
from .logging_config import log_action
from .storage import StorageInterface


logger = logging.getLogger(__name__)


class ExpirationSweep:

    def __init__(self, storage: StorageInterface, cards_table: str = "cards"):
        self.storage = storage
        self.cards_table = cards_table

    def sweep(self, current_date: Optional[date] = None) -> int:
        """
        Expire ACTIVE cards with expiration_date < current_date

        Returns:
            Number of cards changed
        """
        current_date = current_date or date.today()
        # Lock the candidates so a concurrent transfer sees either ACTIVE or EXPIRED
        candidates = [
            data["id"]
            for data in self.storage.find(self.cards_table, {"status": CardStatus.ACTIVE})
            if data["expiration_date"] < current_date.isoformat()
        ]
        if not candidates:
            return 0

        with self.storage.lock(self.cards_table, candidates):
            with self.storage.atomic():
                updated = self.storage.update_where(
                    self.cards_table,
                    {"status": CardStatus.ACTIVE},
                    {"status": CardStatus.EXPIRED},
                    less_than={"expiration_date": current_date},
                    record_ids=candidates,
                )

        log_action(
            logger, "info", f"{updated} cards updated to EXPIRED status",
            action="expire_cards", extra={"as_of": current_date.isoformat()},
        )
        return updated

    def run_on_demand(self, identity: Identity, current_date: Optional[date] = None) -> int:
        """Administrator-triggered sweep"""
        require_permission(identity, Permission.MAINTENANCE)
        return self.sweep(current_date)

    def run_scheduled(self, current_date: Optional[date] = None) -> int:
        """
        Entry point for the daily scheduler. A failed run is logged and
        reported as zero so the next run still happens.
        """
        logger.info("Starting scheduled task: checking for expired cards")
        try:
            updated = self.sweep(current_date)
        except Exception as e:
            logger.warning(f"Error during scheduled task for expired cards check: {e}")
            return 0

        if updated:
            logger.info(f"Scheduled task completed: {updated} cards updated to EXPIRED status")
        else:
            logger.debug("Scheduled task completed: no expired cards found")
        return updated


def seconds_until(run_at: time, now: datetime) -> float:
    """Seconds from now to the next occurrence of run_at (today or tomorrow)"""
    target = datetime.combine(now.date(), run_at, tzinfo=now.tzinfo)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class ExpirationScheduler:
    """Daily background trigger for ExpirationSweep.run_scheduled()"""

    def __init__(self, sweep: ExpirationSweep, run_at: time = time(0, 0)):
        self.sweep = sweep
        self.run_at = run_at
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="card-expiration-scheduler")
        self._thread.daemon = True
        self._thread.start()
        logger.info(f"Card expiration scheduler started, daily at {self.run_at.isoformat()}")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Card expiration scheduler stopped")

    def _loop(self) -> None:
        while not self._stop.wait(seconds_until(self.run_at, datetime.now())):
            self.sweep.run_scheduled()
