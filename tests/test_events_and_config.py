# tests/test_events_and_config.py
"""
Tests for the event bus, default handlers, configuration and the audit scheduler.
"""
import logging
from contextlib import contextmanager
from unittest.mock import patch

import pytest

from config import Config, ConfigurationError
from referral_engine.events.event_bus import EventBus, ReferralEvents, eventBus
from referral_engine.events.setup import setup_event_handlers, teardown_event_handlers


# =============================================================================
# TEST CLASS: EventBus
# =============================================================================

class TestEventBus:

    def test_emit_delivers_with_event_name(self):
        bus = EventBus()
        received = []
        bus.subscribe("x", received.append)

        delivered = bus.emit("x", {"a": 1})

        assert delivered == 1
        assert received == [{"a": 1, "event": "x"}]

    def test_failing_handler_does_not_break_others(self):
        bus = EventBus()
        received = []

        def broken(data):
            raise RuntimeError("boom")

        bus.subscribe("x", broken)
        bus.subscribe("x", received.append)

        assert bus.emit("x", {}) == 1
        assert len(received) == 1

    def test_subscribe_once_and_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe("x", received.append)
        bus.subscribe("x", received.append)
        bus.emit("x", {})

        bus.unsubscribe("x", received.append)
        bus.emit("x", {})

        assert len(received) == 1

    def test_anomalies_logged_by_default_handlers(self, caplog):
        setup_event_handlers()
        try:
            with caplog.at_level(logging.WARNING, logger="referral_engine.anomalies"):
                eventBus.emit(ReferralEvents.DANGLING_REFERRER, {"username": "C", "missingReferrer": "ghost"})
        finally:
            teardown_event_handlers()

        assert "missingReferrer=ghost" in caplog.text
        assert eventBus.handlers(ReferralEvents.DANGLING_REFERRER) == []


# =============================================================================
# TEST CLASS: Config
# =============================================================================

class TestConfig:

    def test_defaults_before_initialization(self):
        assert Config.get(Config.MAX_UPLINE_DEPTH) == 15
        assert Config.get(Config.INDIRECT_ROLLUP_ENABLED) is True

    def test_initialize_from_env(self, monkeypatch):
        monkeypatch.setenv("MAX_UPLINE_DEPTH", "20")
        monkeypatch.setenv("INDIRECT_ROLLUP_ENABLED", "false")
        monkeypatch.setenv("AUDIT_FALLBACK_REFERRER", "admin")

        Config.initialize_from_env()

        assert Config.get(Config.MAX_UPLINE_DEPTH) == 20
        assert Config.get(Config.INDIRECT_ROLLUP_ENABLED) is False
        assert Config.get(Config.AUDIT_FALLBACK_REFERRER) == "admin"

    def test_invalid_depth(self, monkeypatch):
        monkeypatch.setenv("MAX_UPLINE_DEPTH", "0")

        with pytest.raises(ConfigurationError):
            Config.initialize_from_env()

    def test_missing_critical_key(self):
        Config.set(Config.DATABASE_URL, "")

        with pytest.raises(ConfigurationError):
            Config.validate_critical_keys()

    def test_set_overrides(self):
        Config.set(Config.PACKAGE_VALIDITY_DAYS, 30)

        assert Config.get_all()[Config.PACKAGE_VALIDITY_DAYS] == 30


# =============================================================================
# TEST CLASS: AuditScheduler
# =============================================================================

class TestAuditScheduler:

    def test_run_audit_updates_stats(self, session, make_user):
        from background.audit_scheduler import AuditScheduler

        make_user("X", referredBy="X")

        @contextmanager
        def session_ctx():
            yield session

        with patch("background.audit_scheduler.get_db_session_ctx", session_ctx):
            scheduler = AuditScheduler(intervalHours=1)
            report = scheduler.runAudit()

        assert report["dryRun"] is True
        assert scheduler.stats["auditsExecuted"] == 1
        assert scheduler.stats["lastIssuesCount"] == report["issuesCount"] >= 1

    def test_safe_wrapper_counts_errors(self):
        from background.audit_scheduler import AuditScheduler

        scheduler = AuditScheduler(intervalHours=1)
        with patch.object(scheduler, "runAudit", side_effect=RuntimeError("db down")):
            scheduler._safe_audit_wrapper()

        assert scheduler.stats["errors"] == 1
        assert scheduler.stats["lastError"] == "db down"

    def test_start_registers_job(self):
        from background.audit_scheduler import AuditScheduler

        scheduler = AuditScheduler(intervalHours=6)
        scheduler.start()
        try:
            status = scheduler.getStatus()
            assert status["isRunning"] is True
            assert [job["id"] for job in status["jobs"]] == ["integrity_audit"]
        finally:
            scheduler.stop()

        assert scheduler.isRunning is False
