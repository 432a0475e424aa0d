"""Tests for periodic reclamation and deferred file cleanup"""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from pdf_toolsuite.reclamation import DeferredTaskScheduler, reclaim, reclamation_loop
from pdf_toolsuite.stores import PendingPayment, Session


class TestReclaim:
    """Test retention windows"""

    def test_sessions_older_than_a_week_are_dropped(self, stores, now):
        stores.sessions._sessions["old"] = Session(user_id="old", created_at=now - timedelta(days=8))
        stores.sessions._sessions["recent"] = Session(user_id="recent", created_at=now - timedelta(days=6))

        report = reclaim(stores, now=now)

        assert report.sessions == 1
        assert "old" not in stores.sessions
        assert "recent" in stores.sessions

    def test_lapsed_premium_is_cleared(self, stores, now):
        session = Session(user_id="u", created_at=now, premium_until=now - timedelta(minutes=1))
        active = Session(user_id="p", created_at=now, premium_until=now + timedelta(hours=1))
        stores.sessions._sessions.update({"u": session, "p": active})

        report = reclaim(stores, now=now)

        assert report.expired_premium == 1
        assert session.premium_until is None
        assert active.premium_until is not None

    def test_payments_and_codes(self, stores, now):
        stores.payments.add(PendingPayment(order_id="ORDER_old", user_id="u", amount="2.00",
                                           created_at=now - timedelta(hours=25)))
        stores.payments.add(PendingPayment(order_id="ORDER_new", user_id="u", amount="2.00",
                                           created_at=now - timedelta(hours=23)))
        old_code = stores.codes.generate()
        old_code.created_at = now - timedelta(days=31)
        new_code = stores.codes.generate()
        new_code.created_at = now - timedelta(days=29)

        report = reclaim(stores, now=now)

        assert report.payments == 1
        assert report.codes == 1
        assert stores.payments.get("ORDER_old") is None
        assert stores.payments.get("ORDER_new") is not None
        assert stores.codes.get(old_code.code) is None
        assert stores.codes.get(new_code.code) is not None

    def test_nothing_to_do(self, stores, now):
        assert reclaim(stores, now=now).total == 0


class TestReclamationLoop:
    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, stores):
        failing = MagicMock(side_effect=RuntimeError("boom"))
        with patch("pdf_toolsuite.reclamation.reclaim", failing):
            task = asyncio.create_task(reclamation_loop(stores, interval_seconds=0.001))
            await asyncio.sleep(0.05)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        assert failing.call_count >= 2


class TestDeferredTaskScheduler:
    """Test fire-and-forget result file deletion"""

    @pytest.mark.asyncio
    async def test_file_deleted_after_delay(self, tmp_path):
        path = tmp_path / "result.pdf"
        path.write_bytes(b"%PDF-1.4")
        scheduler = DeferredTaskScheduler()

        task = scheduler.schedule_file_deletion(path, delay_seconds=0.01)
        assert len(scheduler) == 1
        await task

        assert not path.exists()
        assert len(scheduler) == 0

    @pytest.mark.asyncio
    async def test_missing_file_is_logged_not_raised(self, tmp_path, caplog):
        scheduler = DeferredTaskScheduler()

        await scheduler.schedule_file_deletion(tmp_path / "gone.pdf", delay_seconds=0)

        assert "Cleanup error" in caplog.text

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending(self, tmp_path):
        path = tmp_path / "result.pdf"
        path.write_bytes(b"%PDF-1.4")
        scheduler = DeferredTaskScheduler()
        scheduler.schedule_file_deletion(path, delay_seconds=3600)

        await scheduler.shutdown()

        assert path.exists()
        assert len(scheduler) == 0
