# referral_engine/services/approval_service.py
"""
Package approval orchestrator.

State machine:
    pending -> approved   (terminal, pays commissions)
    pending -> rejected   (terminal, no financial side effects)

The transition is a compare-and-swap UPDATE on status='pending', so two
concurrent approvals of the same request cannot both pass: the loser
gets AlreadyProcessed. Balances and points move with SQL-side increments.
Everything happens in one transaction on the session the caller passes in.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple
from sqlalchemy import update
from sqlalchemy.orm import Session
import logging

from config import Config
from models.user import User
from models.package import Package
from models.package_request import PackageRequest, STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED
from models.earning import Earning, TYPE_POINTS
from referral_engine.config.ranks import load_rank_ladder
from referral_engine.events.event_bus import eventBus, ReferralEvents
from referral_engine.exceptions import AlreadyProcessed, ApprovalDataError, PackageRequestNotFound
from referral_engine.services.commission_service import CommissionService, CommissionPlan, format_money
from referral_engine.services.rank_service import RankService
from referral_engine.utils.chain_walker import ChainWalker

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

PendingEvents = List[Tuple[str, Dict[str, Any]]]


class PackageApprovalService:
    """Approves and rejects package requests."""

    def __init__(self, session: Session, manageTransaction: bool = True):
        """
        Args:
            session: Transaction scope for every read and write
            manageTransaction: True - commit/rollback here.
                False - run inside a SAVEPOINT and leave the commit to the caller.
                Events are then held in pendingEvents until publishPending().
        """
        self.session = session
        self.manageTransaction = manageTransaction
        self.pendingEvents: PendingEvents = []

    # ═══════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════

    def approve(self, requestId: int, adminNotes: Optional[str] = None) -> Dict[str, Any]:
        """
        Approve a pending package request and pay its commissions.

        Steps (one transaction):
        1. CAS status pending -> approved (AlreadyProcessed otherwise)
        2. Attach package to buyer, set expiry, add package points
        3. Re-resolve buyer rank
        4. Plan commissions
        5. Write Earnings and increment recipient balances/points
        6. Commit

        Raises:
            AlreadyProcessed: Request is not pending (nothing changed)
            PackageRequestNotFound: No such request
            ApprovalDataError: Buyer or package row missing (rolled back)
            RankLadderError: Rank table unusable (rolled back)
        """
        logger.info(f"Starting package approval for request {requestId}")
        result, events = self._inTransaction(lambda: self._approve(requestId, adminNotes))
        self._deliver(events)
        return result

    def reject(self, requestId: int, adminNotes: Optional[str] = None) -> Dict[str, Any]:
        """
        Reject a pending package request. No financial side effects.

        Raises:
            AlreadyProcessed: Request is not pending
            PackageRequestNotFound: No such request
        """
        logger.info(f"Rejecting package request {requestId}")

        def work():
            request = self._transition(requestId, STATUS_REJECTED, adminNotes)
            data = {
                "requestId": requestId,
                "userId": request.userID,
                "packageId": request.packageID,
                "adminNotes": adminNotes,
            }
            return (
                {"success": True, "code": "REJECTED", **data},
                [(ReferralEvents.PACKAGE_REJECTED, data)]
            )

        result, events = self._inTransaction(work)
        self._deliver(events)
        return result

    # ═══════════════════════════════════════════════════════════════════
    # APPROVAL STEPS
    # ═══════════════════════════════════════════════════════════════════

    def _approve(self, requestId: int, adminNotes: Optional[str]):
        events: PendingEvents = []

        # STEP 1: idempotency guard
        request = self._transition(requestId, STATUS_APPROVED, adminNotes)

        buyer = self.session.get(User, request.userID)
        if buyer is None:
            raise ApprovalDataError(f"Buyer userID={request.userID} of request {requestId} not found")

        package = self.session.get(Package, request.packageID)
        if package is None:
            raise ApprovalDataError(f"Package {request.packageID} of request {requestId} not found")

        ladder = load_rank_ladder(self.session)
        rankService = RankService(self.session, ladder)

        logger.info(f"Approving package {package.package_name} for user {buyer.username}")

        # STEP 2: package, expiry, points
        now = datetime.now(timezone.utc)
        buyer.currentPackageID = package.packageID
        buyer.packageExpiryDate = now + timedelta(days=int(Config.get(Config.PACKAGE_VALIDITY_DAYS)))

        packagePoints = int(package.package_points or 0)
        if packagePoints > 0:
            self._increment(buyer.userID, points=packagePoints)
            self.session.add(Earning(
                userID=buyer.userID,
                packageRequestID=requestId,
                amount=Decimal(packagePoints),
                type=TYPE_POINTS,
                description=f"Package points: {package.package_name}",
            ))

        # STEP 3: buyer rank
        oldTier, newTier = rankService.recalculateUserRank(buyer)
        self._rankEvent(events, buyer, oldTier, newTier)

        # STEP 4: plan
        walker = ChainWalker(self.session)
        plan = CommissionService(self.session, walker).planCommissions(buyer, package, ladder)

        # STEP 5: ledger + balances
        for payout in plan.payouts:
            self.session.add(Earning(
                userID=payout.recipientID,
                packageRequestID=requestId,
                amount=payout.amount,
                type=payout.type,
                description=payout.reason,
            ))

            if payout.isMonetary:
                self._increment(payout.recipientID, amount=payout.amount)
            else:
                self._increment(payout.recipientID, points=int(payout.amount))
                recipient = self.session.get(User, payout.recipientID)
                oldTier, newTier = rankService.recalculateUserRank(recipient)
                self._rankEvent(events, recipient, oldTier, newTier)

        self.session.flush()

        for anomaly in plan.anomalies:
            events.append((anomaly.event, dict(anomaly.to_dict(), requestId=requestId)))

        summary = self._summary(requestId, buyer, package, packagePoints, newTier.title, plan)
        events.append((ReferralEvents.PACKAGE_APPROVED, {
            "requestId": requestId,
            "buyer": buyer.username,
            "packageId": package.packageID,
            "payouts": len(plan.payouts),
            "totalPaid": summary["totalPaid"],
        }))

        logger.info(
            f"Package request {requestId} approved: {len(plan.payouts)} payouts, "
            f"total {summary['totalPaid']}"
        )
        return summary, events

    def _transition(self, requestId: int, newStatus: str, adminNotes: Optional[str]) -> PackageRequest:
        """Atomic pending -> newStatus; raises if the request is not pending."""
        now = datetime.now(timezone.utc)
        values = {"status": newStatus, "processedAt": now, "updatedAt": now}
        if adminNotes is not None:
            values["adminNotes"] = adminNotes

        result = self.session.execute(
            update(PackageRequest)
            .where(PackageRequest.requestID == requestId)
            .where(PackageRequest.status == STATUS_PENDING)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )

        request = self.session.get(PackageRequest, requestId, populate_existing=True)
        if request is None:
            raise PackageRequestNotFound(requestId)
        if result.rowcount != 1:
            logger.warning(f"Package request {requestId} is not pending (status={request.status})")
            raise AlreadyProcessed(requestId, request.status)

        return request

    def _increment(self, userId: int, amount: Decimal = ZERO, points: int = 0):
        """SQL-side increment so concurrent payouts to one user never lose updates."""
        values = {}
        if amount:
            values["balance"] = User.balance + amount
            values["totalEarnings"] = User.totalEarnings + amount
        if points:
            values["points"] = User.points + points
        if not values:
            return

        result = self.session.execute(
            update(User)
            .where(User.userID == userId)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise ApprovalDataError(f"Recipient userID={userId} disappeared during approval")

    # ═══════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════

    def _inTransaction(self, work: Callable[[], Tuple[Dict[str, Any], PendingEvents]]):
        if not self.manageTransaction:
            with self.session.begin_nested():
                return work()

        try:
            outcome = work()
            self.session.commit()
            return outcome
        except Exception:
            self.session.rollback()
            raise

    def publishPending(self) -> int:
        """Emit events held back for a caller-managed transaction. Call after commit."""
        events, self.pendingEvents = self.pendingEvents, []
        self._publish(events)
        return len(events)

    def _deliver(self, events: PendingEvents):
        if self.manageTransaction:
            self._publish(events)
        else:
            self.pendingEvents.extend(events)

    @staticmethod
    def _publish(events: PendingEvents):
        for event, data in events:
            eventBus.emit(event, data)

    @staticmethod
    def _rankEvent(events: PendingEvents, user: User, oldTier, newTier):
        if oldTier is not None and oldTier.rankID == newTier.rankID:
            return
        events.append((ReferralEvents.RANK_CHANGED, {
            "username": user.username,
            "oldRank": oldTier.title if oldTier else None,
            "newRank": newTier.title,
            "points": user.points,
        }))

    @staticmethod
    def _summary(requestId, buyer, package, packagePoints, rankTitle, plan: CommissionPlan) -> Dict[str, Any]:
        return {
            "success": True,
            "code": "APPROVED",
            "requestId": requestId,
            "buyer": buyer.username,
            "package": package.package_name,
            "pointsAdded": packagePoints,
            "rank": rankTitle,
            "payouts": [p.to_dict() for p in plan.payouts],
            "totalPaid": format_money(plan.totalMonetary),
            "anomalies": [a.to_dict() for a in plan.anomalies],
        }
