"""Tests for entitlement evaluation and usage commit"""

from datetime import timedelta

import pytest

from pdf_toolsuite.entitlements import (
    TOOL_CONFIGS,
    ToolConfig,
    commit,
    evaluate,
    require_convert_format,
)
from pdf_toolsuite.errors import InvalidInput, InvalidTool, PremiumRequired, QuotaExhausted


class TestEvaluate:
    """Test the pure entitlement check"""

    def test_unknown_tool(self, session):
        with pytest.raises(InvalidTool) as exc_info:
            evaluate(session, "shred")
        assert exc_info.value.status_code == 400

    def test_unlimited_tool_reports_no_remaining(self, session):
        permit = evaluate(session, "merge")

        assert permit.limit is None
        assert permit.remaining_after_success is None

    def test_remaining_counts_this_use(self, session):
        session.usage["split"] = 3

        permit = evaluate(session, "split")

        assert permit.used == 3
        assert permit.remaining_after_success == 1

    def test_quota_exhausted_reports_usage(self, session):
        ceiling = TOOL_CONFIGS["split"].free_limit
        session.usage["split"] = ceiling

        with pytest.raises(QuotaExhausted) as exc_info:
            evaluate(session, "split")

        error = exc_info.value
        assert error.status_code == 403
        assert error.to_dict()["used"] == ceiling
        assert error.to_dict()["limit"] == ceiling

    def test_premium_bypasses_quota(self, session, now):
        session.usage["repair"] = 50
        session.premium_until = now + timedelta(hours=1)

        permit = evaluate(session, "repair", now=now)

        assert permit.is_premium
        assert permit.remaining_after_success is None

    def test_lapsed_premium_keeps_counters(self, session, now):
        session.usage["repair"] = 2
        session.premium_until = now - timedelta(seconds=1)

        with pytest.raises(QuotaExhausted):
            evaluate(session, "repair", now=now)
        assert session.usage["repair"] == 2

    def test_premium_convert_formats(self, session, now):
        with pytest.raises(PremiumRequired):
            evaluate(session, "convert", "powerpoint", now=now)
        with pytest.raises(PremiumRequired):
            evaluate(session, "convert", "images", now=now)

        assert evaluate(session, "convert", "word", now=now).tool == "convert"

        session.premium_until = now + timedelta(hours=1)
        assert evaluate(session, "convert", "images", now=now).is_premium

    def test_premium_only_tool(self, session):
        configs = {"merge": ToolConfig(requires_premium=True)}

        with pytest.raises(PremiumRequired):
            evaluate(session, "merge", configs=configs)

    def test_evaluate_has_no_side_effects(self, session):
        session.usage["split"] = 4
        before = dict(session.usage)

        for _ in range(3):
            evaluate(session, "split")

        assert session.usage == before

    def test_missing_convert_format(self):
        with pytest.raises(InvalidInput):
            require_convert_format("convert", None)
        require_convert_format("merge", None)


class TestCommit:
    """Test atomic re-check and usage recording"""

    def test_commit_records_usage(self, stores):
        _, session = stores.sessions.resolve(None)

        permit = commit(stores.sessions, session, "repair")

        assert session.usage["repair"] == 1
        assert permit.remaining_after_success == 1

    def test_concurrent_requests_at_boundary(self, stores):
        """Both requests pass the initial check; only one may commit"""
        _, session = stores.sessions.resolve(None)
        session.usage["split"] = 4

        evaluate(session, "split")
        evaluate(session, "split")

        commit(stores.sessions, session, "split")
        with pytest.raises(QuotaExhausted):
            commit(stores.sessions, session, "split")

        assert session.usage["split"] == 5
