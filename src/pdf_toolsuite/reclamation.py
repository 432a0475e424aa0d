"""
Periodic reclamation of the in-memory tables and deferred result-file cleanup.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Set

from pydantic import BaseModel

from .stores import Stores, utcnow

logger = logging.getLogger(__name__)

SESSION_RETENTION = timedelta(days=7)
PAYMENT_RETENTION = timedelta(hours=24)
CODE_RETENTION = timedelta(days=30)

RECLAIM_INTERVAL_SECONDS = 60 * 60
RESULT_TTL_SECONDS = 60 * 60


class ReclamationReport(BaseModel):
    sessions: int = 0
    expired_premium: int = 0
    payments: int = 0
    codes: int = 0

    @property
    def total(self) -> int:
        return self.sessions + self.expired_premium + self.payments + self.codes


def reclaim(stores: Stores, now: Optional[datetime] = None) -> ReclamationReport:
    """
    Drop sessions older than 7 days, payments older than 24 hours and codes
    older than 30 days. Lapsed premium windows are cleared to ``None``.
    """
    now = now or utcnow()
    report = ReclamationReport()

    with stores.lock:
        for session in stores.sessions:
            if session.premium_until is not None and now > session.premium_until:
                session.premium_until = None
                report.expired_premium += 1
            if now - session.created_at > SESSION_RETENTION:
                stores.sessions.delete(session.user_id)
                report.sessions += 1

        for payment in stores.payments:
            if now - payment.created_at > PAYMENT_RETENTION:
                stores.payments.delete(payment.order_id)
                report.payments += 1

        for code in stores.codes:
            if now - code.created_at > CODE_RETENTION:
                stores.codes.delete(code.code)
                report.codes += 1

    if report.total:
        logger.info(
            f"Cleanup: {report.sessions} old sessions, {report.expired_premium} expired premium, "
            f"{report.payments} old payments, {report.codes} old codes"
        )
    return report


async def reclamation_loop(stores: Stores, interval_seconds: float = RECLAIM_INTERVAL_SECONDS):
    """Background loop; errors are logged and the loop keeps running"""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            reclaim(stores)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Reclamation loop error: {e}")


class DeferredTaskScheduler:
    """
    Fire-and-forget delayed tasks, decoupled from request handling.

    Deletion is best effort: a failure is logged and never retried.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def schedule_file_deletion(self, path: Path, delay_seconds: float = RESULT_TTL_SECONDS) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._delete_later(Path(path), delay_seconds))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _delete_later(path: Path, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        try:
            path.unlink()
            logger.info(f"Cleaned up file: {path.name}")
        except OSError as e:
            logger.error(f"Cleanup error for {path.name}: {e}")

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
