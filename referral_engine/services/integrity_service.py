# referral_engine/services/integrity_service.py
"""
Referral graph integrity auditor.

Scans the whole users table (and the rows hanging off it) for:
    - orphan accounts: referredBy names a user that does not exist
    - self-referrals: referredBy == username
    - circular referrals: the upline walk loops before reaching a root
    - package requests / earnings whose user row is gone
    - referralCount drift against the real number of direct children

Dry run only reports. Apply mode repairs each row in its own SAVEPOINT
with a conditional UPDATE on the value that was found, so a row that was
already repaired (by a previous run or a concurrent admin) is skipped and
re-running the audit changes nothing.

Never call this from inside an approval transaction.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy import update, func
from sqlalchemy.orm import Session
import logging

from config import Config
from models.user import User
from models.package_request import PackageRequest, STATUS_PENDING
from models.earning import Earning
from referral_engine.events.event_bus import eventBus, ReferralEvents
from referral_engine.exceptions import AlreadyProcessed, RemediationError
from referral_engine.services.approval_service import PackageApprovalService
from referral_engine.utils.chain_walker import ChainWalker, ReferralIndex, WalkOutcome, CYCLE_CHECK_MAX_DEPTH

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

CHECK_REFERRALS = "referrals"
CHECK_PACKAGE_REQUESTS = "package_requests"
CHECK_EARNINGS = "earnings"
CHECK_REFERRAL_COUNTS = "referral_counts"
CHECK_ALL = "all"

CHECK_TYPES = (
    CHECK_REFERRALS,
    CHECK_PACKAGE_REQUESTS,
    CHECK_EARNINGS,
    CHECK_REFERRAL_COUNTS,
    CHECK_ALL,
)

REMEDIATION_DETACH = "detach"
REMEDIATION_REASSIGN = "reassign"

REMEDIATIONS = (REMEDIATION_DETACH, REMEDIATION_REASSIGN)

FIX_SELF_REFERRAL = "self_referral"
FIX_ORPHAN_REFERRAL = "orphan_referral"
FIX_CIRCULAR_REFERRAL = "circular_referral"
FIX_ORPHAN_PACKAGE_REQUEST = "orphan_package_request"
FIX_REFERRAL_COUNT = "referral_count"


def _naive(value: Optional[datetime]) -> datetime:
    # SQLite hands back naive datetimes, fresh in-session objects carry tzinfo
    if value is None:
        return datetime.min
    return value.replace(tzinfo=None)


class IntegrityService:
    """Batch auditor for the referral graph."""

    def __init__(self, session: Session, maxDepth: Optional[int] = None):
        self.session = session
        self.maxDepth = maxDepth if maxDepth is not None else Config.get(Config.MAX_UPLINE_DEPTH)
        self._approvals: List[PackageApprovalService] = []

    # ═══════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════

    def runCheck(
            self,
            checkType: str = CHECK_ALL,
            fixIssues: bool = False,
            dryRun: bool = True,
            remediation: str = REMEDIATION_DETACH,
            fallbackReferrer: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Run one audit.

        Args:
            checkType: referrals, package_requests, earnings, referral_counts or all
            fixIssues: Repair what is found
            dryRun: Report only, even if fixIssues is set
            remediation: For broken referral edges - detach (referredBy = NULL)
                or reassign to fallbackReferrer
            fallbackReferrer: Target of reassign, defaults to
                Config.AUDIT_FALLBACK_REFERRER

        Returns:
            Report dict with issuesCount, fixesApplied, fixesFailed

        Raises:
            ValueError: Unknown checkType
            RemediationError: Unknown remediation or unusable fallback referrer
        """
        if checkType not in CHECK_TYPES:
            raise ValueError(f"Invalid check type '{checkType}'. Use: {', '.join(CHECK_TYPES)}")

        applying = bool(fixIssues) and not dryRun
        if applying:
            fallbackReferrer = self._validateRemediation(remediation, fallbackReferrer)

        self._approvals = []

        logger.info(
            f"Integrity check '{checkType}' started "
            f"(fixIssues={fixIssues}, dryRun={dryRun}, remediation={remediation})"
        )

        if checkType == CHECK_ALL:
            report = self._checkAll(applying, remediation, fallbackReferrer)
        elif checkType == CHECK_REFERRALS:
            report = self.checkReferrals(applying, remediation, fallbackReferrer)
        elif checkType == CHECK_PACKAGE_REQUESTS:
            report = self.checkPackageRequests(applying)
        elif checkType == CHECK_EARNINGS:
            report = self.checkEarnings()
        else:
            report = self.checkReferralCounts(applying)

        if applying:
            self.session.commit()
            for approvals in self._approvals:
                approvals.publishPending()
        self._approvals = []

        logger.info(
            f"Integrity check '{checkType}' finished: {report['issuesCount']} issues, "
            f"{report['fixesApplied']} fixes applied, {report['fixesFailed']} failed"
        )

        eventBus.emit(ReferralEvents.AUDIT_COMPLETED, {
            "checkType": checkType,
            "dryRun": not applying,
            "issuesCount": report["issuesCount"],
            "fixesApplied": report["fixesApplied"],
            "fixesFailed": report["fixesFailed"],
        })

        return report

    # ═══════════════════════════════════════════════════════════════════
    # REFERRALS
    # ═══════════════════════════════════════════════════════════════════

    def checkReferrals(
            self,
            applying: bool = False,
            remediation: str = REMEDIATION_DETACH,
            fallbackReferrer: Optional[str] = None
    ) -> Dict[str, Any]:
        """Orphans, self-referrals and cycles, plus missing-referrer aggregation."""
        index = ReferralIndex.preload(self.session)
        walker = ChainWalker(self.session, index, self.maxDepth)

        orphanAccounts: List[Dict] = []
        selfReferrals: List[Dict] = []
        circularReferrals: List[Dict] = []
        missingReferrers: Dict[str, Dict] = {}
        depthLimited: List[str] = []
        plannedFixes: List[Dict] = []
        seenCycles = set()
        validCount = 0

        usersWithReferrer = [u for u in index.users() if u.referredBy]

        for user in usersWithReferrer:
            if user.referredBy == user.username:
                selfReferrals.append({
                    "userId": user.userID,
                    "username": user.username,
                    "issue": "Self-referral detected",
                })
                plannedFixes.append(self._referralFix(FIX_SELF_REFERRAL, user))
                continue

            if not index.exists(user.referredBy):
                orphanAccounts.append({
                    "userId": user.userID,
                    "username": user.username,
                    "referredBy": user.referredBy,
                    "issue": "Referrer not found",
                })
                group = missingReferrers.setdefault(user.referredBy, {
                    "referrer": user.referredBy,
                    "count": 0,
                    "usernames": [],
                    "totalBalance": ZERO,
                    "totalEarnings": ZERO,
                })
                group["count"] += 1
                group["usernames"].append(user.username)
                group["totalBalance"] += Decimal(str(user.balance or 0))
                group["totalEarnings"] += Decimal(str(user.totalEarnings or 0))
                plannedFixes.append(self._referralFix(FIX_ORPHAN_REFERRAL, user))
                continue

            # Loops longer than the commission depth must still surface as cycles
            walk = walker.walk_upline(user.username, CYCLE_CHECK_MAX_DEPTH)
            walk.exhaust()

            if walk.outcome is WalkOutcome.CYCLE:
                members = walk.cycle_members
                key = frozenset(members)
                # Single-member loops are self-referrals higher up, reported on their own
                if len(members) > 1 and key not in seenCycles:
                    seenCycles.add(key)
                    breaker = self._newestMember(index, members)
                    circularReferrals.append({
                        "members": members,
                        "length": len(members),
                        "breakAt": breaker.username,
                        "issue": "Circular referral detected",
                    })
                    plannedFixes.append(self._referralFix(FIX_CIRCULAR_REFERRAL, breaker))
                continue

            if walk.outcome is WalkOutcome.DEPTH_LIMIT or walk.depth > self.maxDepth:
                depthLimited.append(user.username)

            validCount += 1

        missing = sorted(missingReferrers.values(), key=lambda g: (-g["count"], g["referrer"]))
        for group in missing:
            group["totalBalance"] = str(group["totalBalance"])
            group["totalEarnings"] = str(group["totalEarnings"])

        fixes = self._applyReferralFixes(plannedFixes, walker, remediation, fallbackReferrer) \
            if applying else [dict(fix, status="planned") for fix in plannedFixes]

        issuesCount = len(orphanAccounts) + len(selfReferrals) + len(circularReferrals)

        return self._report(
            CHECK_REFERRALS,
            applying,
            fixes,
            issuesCount,
            statistics={
                "totalUsersWithReferrals": len(usersWithReferrer),
                "orphanAccountsCount": len(orphanAccounts),
                "selfReferralsCount": len(selfReferrals),
                "circularReferralsCount": len(circularReferrals),
                "missingReferrersCount": len(missing),
                "validReferralsCount": validCount,
                "depthLimitCount": len(depthLimited),
            },
            orphanAccounts=orphanAccounts,
            selfReferrals=selfReferrals,
            circularReferrals=circularReferrals,
            missingReferrers=missing,
            depthLimited=depthLimited,
        )

    def _applyReferralFixes(
            self,
            plannedFixes: List[Dict],
            walker: ChainWalker,
            remediation: str,
            fallbackReferrer: Optional[str]
    ) -> List[Dict]:
        results = []

        for fix in plannedFixes:
            newReferrer = None
            if remediation == REMEDIATION_REASSIGN:
                if walker.would_create_cycle(fix["username"], fallbackReferrer):
                    logger.warning(
                        f"Reassigning {fix['username']} to {fallbackReferrer} would create a cycle, "
                        f"detaching instead"
                    )
                else:
                    newReferrer = fallbackReferrer

            action = f"Set referredBy to {newReferrer}" if newReferrer else "Set referredBy to null"

            results.append(self._applyRowFix(
                fix,
                action,
                lambda: update(User)
                .where(User.userID == fix["userId"])
                .where(User.referredBy == fix["oldReferrer"])
                .values(referredBy=newReferrer, updatedAt=datetime.now(timezone.utc))
            ))

        return results

    @staticmethod
    def _referralFix(fixType: str, user: User) -> Dict:
        return {
            "type": fixType,
            "userId": user.userID,
            "username": user.username,
            "oldReferrer": user.referredBy,
        }

    @staticmethod
    def _newestMember(index: ReferralIndex, members: List[str]) -> User:
        """Cycle member to cut: latest createdAt, then highest userID."""
        users = [index.get(name) for name in members]
        return max(users, key=lambda u: (_naive(u.createdAt), u.userID))

    # ═══════════════════════════════════════════════════════════════════
    # PACKAGE REQUESTS / EARNINGS
    # ═══════════════════════════════════════════════════════════════════

    def checkPackageRequests(self, applying: bool = False) -> Dict[str, Any]:
        """Requests whose user is gone; pending ones are rejected in apply mode."""
        orphans = self.session.query(PackageRequest).outerjoin(
            User, User.userID == PackageRequest.userID
        ).filter(
            User.userID.is_(None)
        ).order_by(PackageRequest.requestID).all()

        orphanRows = [{
            "requestId": r.requestID,
            "userId": r.userID,
            "packageId": r.packageID,
            "status": r.status,
        } for r in orphans]

        fixes = []
        approvals = PackageApprovalService(self.session, manageTransaction=False)
        self._approvals.append(approvals)

        for row in orphanRows:
            if row["status"] != STATUS_PENDING:
                continue

            fix = {"type": FIX_ORPHAN_PACKAGE_REQUEST, "requestId": row["requestId"], "userId": row["userId"]}
            if not applying:
                fixes.append(dict(fix, status="planned"))
                continue

            try:
                approvals.reject(
                    row["requestId"],
                    adminNotes="Rejected by integrity audit: user not found"
                )
                fixes.append(dict(fix, status="applied", action="Rejected pending request"))
            except AlreadyProcessed:
                fixes.append(dict(fix, status="skipped", action="Already processed"))
            except Exception as e:
                logger.error(f"Failed to reject orphan request {row['requestId']}: {e}", exc_info=True)
                fixes.append(dict(fix, status="failed", error=str(e)))

        return self._report(
            CHECK_PACKAGE_REQUESTS,
            applying,
            fixes,
            len(orphanRows),
            statistics={
                "orphanPackageRequestsCount": len(orphanRows),
                "pendingOrphansCount": sum(1 for r in orphanRows if r["status"] == STATUS_PENDING),
            },
            orphanPackageRequests=orphanRows,
        )

    def checkEarnings(self) -> Dict[str, Any]:
        """Earnings whose recipient is gone. Report only: the ledger is append-only."""
        orphans = self.session.query(Earning).outerjoin(
            User, User.userID == Earning.userID
        ).filter(
            User.userID.is_(None)
        ).order_by(Earning.earningID).all()

        total = sum((Decimal(str(e.amount)) for e in orphans), ZERO)

        return self._report(
            CHECK_EARNINGS,
            False,
            [],
            len(orphans),
            statistics={
                "orphanEarningsCount": len(orphans),
                "orphanEarningsTotal": str(total),
            },
            orphanEarnings=[{
                "earningId": e.earningID,
                "userId": e.userID,
                "packageRequestId": e.packageRequestID,
                "amount": str(e.amount),
                "type": e.type,
            } for e in orphans],
        )

    # ═══════════════════════════════════════════════════════════════════
    # REFERRAL COUNTS
    # ═══════════════════════════════════════════════════════════════════

    def checkReferralCounts(self, applying: bool = False) -> Dict[str, Any]:
        """Compare User.referralCount with the actual number of direct children."""
        actual = dict(
            self.session.query(User.referredBy, func.count(User.userID))
            .filter(User.referredBy.isnot(None))
            .filter(User.referredBy != User.username)
            .group_by(User.referredBy)
            .all()
        )

        drifted = []
        for user in self.session.query(User).order_by(User.userID).all():
            expected = actual.get(user.username, 0)
            if (user.referralCount or 0) != expected:
                drifted.append({
                    "type": FIX_REFERRAL_COUNT,
                    "userId": user.userID,
                    "username": user.username,
                    "stored": user.referralCount,
                    "actual": expected,
                })

        if applying:
            fixes = [
                self._applyRowFix(
                    row,
                    f"Set referralCount {row['stored']} -> {row['actual']}",
                    lambda row=row: update(User)
                    .where(User.userID == row["userId"])
                    .where(User.referralCount == row["stored"])
                    .values(referralCount=row["actual"])
                )
                for row in drifted
            ]
        else:
            fixes = [dict(row, status="planned") for row in drifted]

        return self._report(
            CHECK_REFERRAL_COUNTS,
            applying,
            fixes,
            len(drifted),
            statistics={"driftedCount": len(drifted)},
            driftedCounts=drifted,
        )

    # ═══════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════

    def _checkAll(self, applying: bool, remediation: str, fallbackReferrer: Optional[str]) -> Dict[str, Any]:
        # Referral fixes change children, so counts are checked after them
        results = {
            CHECK_REFERRALS: self.checkReferrals(applying, remediation, fallbackReferrer),
            CHECK_PACKAGE_REQUESTS: self.checkPackageRequests(applying),
            CHECK_EARNINGS: self.checkEarnings(),
            CHECK_REFERRAL_COUNTS: self.checkReferralCounts(applying),
        }

        return {
            "checkType": CHECK_ALL,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "dryRun": not applying,
            "issuesCount": sum(r["issuesCount"] for r in results.values()),
            "fixesApplied": sum(r["fixesApplied"] for r in results.values()),
            "fixesFailed": sum(r["fixesFailed"] for r in results.values()),
            "statistics": {name: r["statistics"] for name, r in results.items()},
            "results": results,
        }

    def _applyRowFix(self, fix: Dict, action: str, buildStatement) -> Dict:
        """Run one conditional UPDATE in its own SAVEPOINT."""
        try:
            with self.session.begin_nested():
                result = self.session.execute(
                    buildStatement().execution_options(synchronize_session="fetch")
                )
        except Exception as e:
            logger.error(f"Integrity fix {fix['type']} for {fix.get('username')} failed: {e}", exc_info=True)
            return dict(fix, status="failed", error=str(e))

        if result.rowcount == 0:
            logger.info(f"Integrity fix {fix['type']} for {fix.get('username')} skipped, row already changed")
            return dict(fix, status="skipped", action="Row already changed")

        logger.info(f"Integrity fix {fix['type']} applied to {fix.get('username')}: {action}")
        return dict(fix, status="applied", action=action)

    def _validateRemediation(self, remediation: str, fallbackReferrer: Optional[str]) -> Optional[str]:
        if remediation not in REMEDIATIONS:
            raise RemediationError(f"Unknown remediation '{remediation}'. Use: {', '.join(REMEDIATIONS)}")

        if remediation == REMEDIATION_DETACH:
            return None

        fallbackReferrer = fallbackReferrer or Config.get(Config.AUDIT_FALLBACK_REFERRER)
        if not fallbackReferrer:
            raise RemediationError("Reassign remediation requires a fallback referrer")

        exists = self.session.query(User.userID).filter(User.username == fallbackReferrer).first()
        if exists is None:
            raise RemediationError(f"Fallback referrer '{fallbackReferrer}' does not exist")

        return fallbackReferrer

    @staticmethod
    def _report(checkType: str, applying: bool, fixes: List[Dict], issuesCount: int,
                statistics: Dict[str, Any], **details) -> Dict[str, Any]:
        applied = sum(1 for f in fixes if f["status"] == "applied")
        failed = sum(1 for f in fixes if f["status"] == "failed")
        statistics = dict(statistics, fixesApplied=applied, fixesFailed=failed)

        return {
            "checkType": checkType,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "dryRun": not applying,
            "issuesCount": issuesCount,
            "fixesApplied": applied,
            "fixesFailed": failed,
            "statistics": statistics,
            "fixes": fixes,
            **details,
        }
