# tests/test_integrity_service.py
"""
Tests for the integrity auditor.

Dry run must never write; apply must change exactly the flagged rows and a
second apply must change nothing.
"""
from decimal import Decimal

import pytest
from sqlalchemy import update

from config import Config
from models import User, Earning, PackageRequest
from models.package_request import STATUS_APPROVED, STATUS_REJECTED
from referral_engine.events.event_bus import ReferralEvents, eventBus
from referral_engine.exceptions import RemediationError
from referral_engine.services.integrity_service import (
    IntegrityService,
    CHECK_REFERRALS,
    CHECK_PACKAGE_REQUESTS,
    CHECK_EARNINGS,
    CHECK_REFERRAL_COUNTS,
    CHECK_ALL,
    REMEDIATION_REASSIGN,
)


def referrer_of(session, username):
    session.expire_all()
    return session.query(User).filter_by(username=username).one().referredBy


@pytest.fixture
def broken_graph(make_user):
    """One self-referral, one 3-node cycle, plus a healthy branch."""
    make_user("root")
    make_user("child", referredBy="root")
    make_user("X", referredBy="X")
    make_user("A", referredBy="C")
    make_user("B", referredBy="A")
    make_user("C", referredBy="B")


# =============================================================================
# TEST CLASS: Self-referral + cycle scenario
# =============================================================================

class TestReferralScenario:

    def test_dry_run_reports_two_issues(self, session, broken_graph):
        """
        TEST: Dry run finds exactly the self-referral and the cycle, changes nothing.
        """
        report = IntegrityService(session).runCheck(CHECK_REFERRALS, fixIssues=True, dryRun=True)

        assert report["dryRun"] is True
        assert report["issuesCount"] == 2
        assert report["fixesApplied"] == 0
        assert [s["username"] for s in report["selfReferrals"]] == ["X"]
        assert len(report["circularReferrals"]) == 1
        assert sorted(report["circularReferrals"][0]["members"]) == ["A", "B", "C"]
        assert report["orphanAccounts"] == []
        assert all(f["status"] == "planned" for f in report["fixes"])
        assert referrer_of(session, "X") == "X"

    def test_apply_then_reapply(self, session, broken_graph):
        """
        TEST: Apply fixes exactly the two flagged rows; a second apply changes nothing.
        """
        service = IntegrityService(session)

        first = service.runCheck(CHECK_REFERRALS, fixIssues=True, dryRun=False)

        assert first["fixesApplied"] == 2
        assert first["fixesFailed"] == 0
        assert referrer_of(session, "X") is None
        # Newest cycle member is cut
        assert referrer_of(session, "C") is None
        assert referrer_of(session, "B") == "A"
        assert referrer_of(session, "child") == "root"

        second = service.runCheck(CHECK_REFERRALS, fixIssues=True, dryRun=False)

        assert second["issuesCount"] == 0
        assert second["fixesApplied"] == 0

    def test_fix_without_dry_run_flag_off_only_reports(self, session, broken_graph):
        report = IntegrityService(session).runCheck(CHECK_REFERRALS, fixIssues=False, dryRun=False)

        assert report["fixesApplied"] == 0
        assert referrer_of(session, "X") == "X"

    def test_tail_below_cycle_reported_once(self, session, broken_graph, make_user):
        make_user("D", referredBy="A")

        report = IntegrityService(session).runCheck(CHECK_REFERRALS)

        assert report["statistics"]["circularReferralsCount"] == 1

    def test_loop_longer_than_walk_depth(self, session, make_user):
        """
        TEST: A 20-user loop is reported as one cycle, broken once, then clean.
        """
        names = [f"u{i}" for i in range(20)]
        for i, name in enumerate(names):
            make_user(name, referredBy=names[(i + 1) % 20])
        service = IntegrityService(session, maxDepth=15)

        report = service.runCheck(CHECK_REFERRALS)

        assert report["issuesCount"] == 1
        assert report["statistics"]["circularReferralsCount"] == 1
        assert report["circularReferrals"][0]["length"] == 20
        assert report["circularReferrals"][0]["breakAt"] == "u19"

        applied = service.runCheck(CHECK_REFERRALS, fixIssues=True, dryRun=False)
        again = service.runCheck(CHECK_REFERRALS, fixIssues=True, dryRun=False)

        assert applied["fixesApplied"] == 1
        assert referrer_of(session, "u19") is None
        assert again["issuesCount"] == 0
        assert again["fixesApplied"] == 0
        # u0..u3 now sit more than 15 levels below the root
        assert again["depthLimited"] == ["u0", "u1", "u2", "u3"]

    def test_concurrent_fix_is_skipped(self, session, make_user):
        """
        TEST: A row changed after the scan is skipped, not overwritten.
        """
        make_user("X", referredBy="X")
        service = IntegrityService(session)
        report = service.runCheck(CHECK_REFERRALS)
        fix = report["fixes"][0]

        session.query(User).filter_by(username="X").update({"referredBy": None})
        session.commit()

        result = service._applyRowFix(
            fix,
            "Set referredBy to null",
            lambda: update(User)
            .where(User.userID == fix["userId"])
            .where(User.referredBy == fix["oldReferrer"])
            .values(referredBy=None)
        )

        assert result["status"] == "skipped"


# =============================================================================
# TEST CLASS: Orphans
# =============================================================================

class TestOrphanAccounts:

    @pytest.fixture
    def orphans(self, make_user):
        make_user("o1", referredBy="gone", balance="100")
        make_user("o2", referredBy="gone", balance="50")
        make_user("o3", referredBy="vanished", balance="10")
        make_user("admin")

    def test_missing_referrer_aggregation(self, session, orphans):
        report = IntegrityService(session).runCheck(CHECK_REFERRALS)

        assert report["statistics"]["orphanAccountsCount"] == 3
        assert report["missingReferrers"][0] == {
            "referrer": "gone",
            "count": 2,
            "usernames": ["o1", "o2"],
            "totalBalance": "150.00",
            "totalEarnings": "150.00",
        }
        assert report["missingReferrers"][1]["referrer"] == "vanished"

    def test_reassign_to_fallback(self, session, orphans):
        report = IntegrityService(session).runCheck(
            CHECK_REFERRALS, fixIssues=True, dryRun=False,
            remediation=REMEDIATION_REASSIGN, fallbackReferrer="admin"
        )

        assert report["fixesApplied"] == 3
        assert referrer_of(session, "o1") == "admin"
        assert referrer_of(session, "o3") == "admin"

    def test_fallback_from_config(self, session, orphans):
        Config.set(Config.AUDIT_FALLBACK_REFERRER, "admin")

        IntegrityService(session).runCheck(
            CHECK_REFERRALS, fixIssues=True, dryRun=False, remediation=REMEDIATION_REASSIGN
        )

        assert referrer_of(session, "o2") == "admin"

    def test_reassign_that_would_loop_detaches(self, session, make_user):
        """
        TEST: Breaking a cycle by reassigning into the same cycle detaches instead.
        """
        make_user("A", referredBy="B")
        make_user("B", referredBy="A")

        IntegrityService(session).runCheck(
            CHECK_REFERRALS, fixIssues=True, dryRun=False,
            remediation=REMEDIATION_REASSIGN, fallbackReferrer="A"
        )

        assert referrer_of(session, "B") is None
        assert referrer_of(session, "A") == "B"

    def test_unknown_fallback_rejected_before_any_change(self, session, orphans):
        with pytest.raises(RemediationError):
            IntegrityService(session).runCheck(
                CHECK_REFERRALS, fixIssues=True, dryRun=False,
                remediation=REMEDIATION_REASSIGN, fallbackReferrer="nobody"
            )

        assert referrer_of(session, "o1") == "gone"

    def test_unknown_remediation(self, session, orphans):
        with pytest.raises(RemediationError):
            IntegrityService(session).runCheck(CHECK_REFERRALS, fixIssues=True, dryRun=False, remediation="delete")

    def test_unknown_check_type(self, session, ranks):
        with pytest.raises(ValueError):
            IntegrityService(session).runCheck("everything")


# =============================================================================
# TEST CLASS: Requests, earnings, counts
# =============================================================================

class TestOtherChecks:

    def test_orphan_pending_request_rejected(self, session, make_user, make_request):
        user = make_user("alive")
        pending = make_request(user, userID=777)
        approved = make_request(user, userID=778, status=STATUS_APPROVED)
        make_request(user)

        report = IntegrityService(session).runCheck(CHECK_PACKAGE_REQUESTS, fixIssues=True, dryRun=False)

        session.expire_all()
        assert report["issuesCount"] == 2
        assert report["fixesApplied"] == 1
        assert session.get(PackageRequest, pending.requestID).status == STATUS_REJECTED
        assert session.get(PackageRequest, approved.requestID).status == STATUS_APPROVED

        again = IntegrityService(session).runCheck(CHECK_PACKAGE_REQUESTS, fixIssues=True, dryRun=False)
        assert again["fixesApplied"] == 0

    def test_rejection_event_fires_after_audit_commit(self, session, make_user, make_request):
        user = make_user("alive")
        make_request(user, userID=777)
        seen = []
        eventBus.subscribe(
            ReferralEvents.PACKAGE_REJECTED,
            lambda data: seen.append((data["requestId"], session.in_transaction()))
        )

        IntegrityService(session).runCheck(CHECK_PACKAGE_REQUESTS, fixIssues=True, dryRun=False)

        assert len(seen) == 1
        assert seen[0][1] is False

    def test_dry_run_emits_no_rejection(self, session, make_user, make_request, captured_events):
        events = captured_events(ReferralEvents.PACKAGE_REJECTED)
        user = make_user("alive")
        make_request(user, userID=777)

        IntegrityService(session).runCheck(CHECK_PACKAGE_REQUESTS, fixIssues=True, dryRun=True)

        assert events == []

    def test_orphan_earnings_report_only(self, session, make_user):
        make_user("alive")
        session.add(Earning(userID=555, packageRequestID=1, amount=Decimal("20"), type="direct_commission"))
        session.commit()

        report = IntegrityService(session).runCheck(CHECK_EARNINGS, fixIssues=True, dryRun=False)

        assert report["issuesCount"] == 1
        assert report["statistics"]["orphanEarningsTotal"] == "20.00"
        assert report["fixes"] == []
        assert session.query(Earning).count() == 1

    def test_referral_count_drift(self, session, make_user):
        make_user("parent", referralCount=5)
        make_user("kid1", referredBy="parent")
        make_user("kid2", referredBy="parent")

        report = IntegrityService(session).runCheck(CHECK_REFERRAL_COUNTS, fixIssues=True, dryRun=False)

        session.expire_all()
        assert report["issuesCount"] == 1
        assert session.query(User).filter_by(username="parent").one().referralCount == 2
        assert IntegrityService(session).runCheck(CHECK_REFERRAL_COUNTS)["issuesCount"] == 0

    def test_all_is_idempotent(self, session, broken_graph, captured_events):
        events = captured_events(ReferralEvents.AUDIT_COMPLETED)
        service = IntegrityService(session)

        first = service.runCheck(CHECK_ALL, fixIssues=True, dryRun=False)
        second = service.runCheck(CHECK_ALL, fixIssues=True, dryRun=False)

        assert first["fixesApplied"] >= 2
        assert second["issuesCount"] == 0
        assert second["fixesApplied"] == 0
        assert len(events) == 2
        assert events[1]["issuesCount"] == 0
