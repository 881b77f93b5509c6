# referral_engine/services/commission_service.py
"""
Commission calculation service - plans direct and indirect payouts
for one approved package purchase.

The service only reads: it returns a CommissionPlan and leaves every
write to PackageApprovalService, so commission math is testable on its own.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
import logging

from config import Config
from models.user import User
from models.package import Package
from models.earning import (
    TYPE_DIRECT_COMMISSION,
    TYPE_INDIRECT_COMMISSION,
    TYPE_POINTS,
    MONETARY_TYPES,
)
from referral_engine.config.ranks import RankLadder, RankTier
from referral_engine.events.event_bus import ReferralEvents
from referral_engine.utils.chain_walker import ChainWalker, WalkOutcome

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENTS = Decimal("0.01")


def format_money(amount) -> str:
    """Money as a fixed two-decimal string, whatever the column scale."""
    return str(Decimal(str(amount)).quantize(CENTS))


@dataclass
class Payout:
    """One planned ledger entry."""
    recipientUsername: str
    recipientID: int
    amount: Decimal
    type: str
    reason: str
    level: int
    tier: Optional[str] = None
    combinedTier: Optional[str] = None

    @property
    def isMonetary(self) -> bool:
        return self.type in MONETARY_TYPES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipientUsername": self.recipientUsername,
            "amount": format_money(self.amount) if self.isMonetary else str(int(self.amount)),
            "type": self.type,
            "reason": self.reason,
            "level": self.level,
            "tier": self.tier,
            "combinedTier": self.combinedTier,
        }


@dataclass
class Anomaly:
    """Data-quality condition met while planning; never an error."""
    event: str
    username: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.details, event=self.event, username=self.username)


@dataclass
class CommissionPlan:
    buyerUsername: str
    packageID: int
    payouts: List[Payout] = field(default_factory=list)
    anomalies: List[Anomaly] = field(default_factory=list)
    walkOutcome: Optional[WalkOutcome] = None

    def of_type(self, payoutType: str) -> List[Payout]:
        return [p for p in self.payouts if p.type == payoutType]

    @property
    def direct(self) -> Optional[Payout]:
        payouts = self.of_type(TYPE_DIRECT_COMMISSION)
        return payouts[0] if payouts else None

    @property
    def indirect(self) -> List[Payout]:
        return self.of_type(TYPE_INDIRECT_COMMISSION)

    @property
    def totalMonetary(self) -> Decimal:
        return sum((p.amount for p in self.payouts if p.isMonetary), ZERO)


class CommissionService:
    """Service for planning referral commissions."""

    def __init__(self, session: Session, walker: Optional[ChainWalker] = None):
        self.session = session
        self.walker = walker or ChainWalker(session)

    def planCommissions(
            self,
            buyer: User,
            package: Package,
            ladder: RankLadder,
            rollupEnabled: Optional[bool] = None,
            uplinePointsEnabled: Optional[bool] = None
    ) -> CommissionPlan:
        """
        Compute every payout produced by `buyer` purchasing `package`.

        Direct commission goes to the immediate referrer. Indirect
        commission goes to the closest member of each rank tier above the
        base tier, walking from the grandparent up (the immediate referrer
        is already paid directly). An empty tier rolls onto the nearest
        higher tier that has members, which is then paid double.

        Args:
            buyer: Purchasing user
            package: Purchased package
            ladder: Current rank ladder
            rollupEnabled: Override Config.INDIRECT_ROLLUP_ENABLED
            uplinePointsEnabled: Override Config.UPLINE_POINTS_ENABLED

        Returns:
            CommissionPlan with payouts in payment order and anomalies
        """
        if rollupEnabled is None:
            rollupEnabled = bool(Config.get(Config.INDIRECT_ROLLUP_ENABLED))
        if uplinePointsEnabled is None:
            uplinePointsEnabled = bool(Config.get(Config.UPLINE_POINTS_ENABLED))

        plan = CommissionPlan(buyerUsername=buyer.username, packageID=package.packageID)

        walk = self.walker.walk_upline(buyer.username)
        upline = walk.exhaust()
        plan.walkOutcome = walk.outcome
        self._recordWalkAnomalies(plan, buyer, walk)

        # ═══════════════════════════════════════════════════════════
        # DIRECT COMMISSION
        # ═══════════════════════════════════════════════════════════
        direct = self._planDirect(buyer, package, upline)
        if direct:
            plan.payouts.append(direct)

        # ═══════════════════════════════════════════════════════════
        # INDIRECT COMMISSION (grandparent and above)
        # ═══════════════════════════════════════════════════════════
        ancestors = [(user, level) for user, level in upline if level >= 2]
        plan.payouts.extend(
            self._planIndirect(plan, buyer, package, ladder, ancestors, rollupEnabled)
        )

        # ═══════════════════════════════════════════════════════════
        # UPLINE POINTS (optional)
        # ═══════════════════════════════════════════════════════════
        points = int(package.package_points or 0)
        if uplinePointsEnabled and points > 0:
            for user, level in upline:
                plan.payouts.append(Payout(
                    recipientUsername=user.username,
                    recipientID=user.userID,
                    amount=Decimal(points),
                    type=TYPE_POINTS,
                    reason=f"Upline points from {buyer.username} (level {level})",
                    level=level,
                ))

        logger.info(
            f"Planned commissions for {buyer.username} / package {package.packageID}: "
            f"{len(plan.payouts)} payouts, monetary total {plan.totalMonetary}, "
            f"{len(plan.anomalies)} anomalies, walk={walk.outcome.value}"
        )

        return plan

    def _planDirect(self, buyer: User, package: Package, upline) -> Optional[Payout]:
        if not upline or upline[0][1] != 1:
            return None

        parent = upline[0][0]
        amount = Decimal(str(package.package_direct_commission or 0))
        if amount <= ZERO:
            logger.debug(f"Package {package.packageID} has no direct commission")
            return None

        return Payout(
            recipientUsername=parent.username,
            recipientID=parent.userID,
            amount=amount,
            type=TYPE_DIRECT_COMMISSION,
            reason=f"Direct commission from {buyer.username}",
            level=1,
        )

    def _planIndirect(
            self,
            plan: CommissionPlan,
            buyer: User,
            package: Package,
            ladder: RankLadder,
            ancestors,
            rollupEnabled: bool
    ) -> List[Payout]:
        if not ancestors:
            return []

        indirect = Decimal(str(package.package_indirect_commission or 0))
        if indirect <= ZERO:
            logger.debug(f"Package {package.packageID} has no indirect commission")
            return []

        # Group upline by current rank, closest first
        membersByTier: Dict[str, List[tuple]] = {}
        for user, level in ancestors:
            tier = ladder.by_id(user.rankID)
            if tier is None:
                logger.debug(f"{user.username} has no rank, not eligible for indirect commission")
                continue
            membersByTier.setdefault(tier.title, []).append((user, level))

        eligible: List[RankTier] = [t for t in ladder.tiers_ascending if t.rankID != ladder.base.rankID]

        # Decide roll-ups from the lowest tier upwards so an empty tier
        # lands on the nearest filled tier above it
        absorbedBy: Dict[str, str] = {}
        for position, tier in enumerate(eligible):
            if membersByTier.get(tier.title):
                continue

            receiver = None
            if rollupEnabled:
                receiver = next(
                    (higher for higher in eligible[position + 1:]
                     if membersByTier.get(higher.title) and higher.title not in absorbedBy),
                    None
                )

            if receiver:
                absorbedBy[receiver.title] = tier.title
                plan.anomalies.append(Anomaly(
                    event=ReferralEvents.TIER_ROLLED_UP,
                    username=buyer.username,
                    details={"emptyTier": tier.title, "paidTier": receiver.title},
                ))
            else:
                plan.anomalies.append(Anomaly(
                    event=ReferralEvents.TIER_UNFILLED,
                    username=buyer.username,
                    details={"tier": tier.title},
                ))

        # Pay from the highest tier down, each tier at most once
        payouts = []
        for tier in reversed(eligible):
            members = membersByTier.get(tier.title)
            if not members:
                continue

            recipient, level = members[0]
            combined = absorbedBy.get(tier.title)
            amount = indirect * 2 if combined else indirect
            reason = f"Indirect commission: {tier.title}"
            if combined:
                reason += f" (combined - includes {combined})"

            payouts.append(Payout(
                recipientUsername=recipient.username,
                recipientID=recipient.userID,
                amount=amount,
                type=TYPE_INDIRECT_COMMISSION,
                reason=reason,
                level=level,
                tier=tier.title,
                combinedTier=combined,
            ))

            logger.debug(
                f"Indirect {amount} to {recipient.username} ({tier.title}, level {level})"
                + (f", includes {combined}" if combined else "")
            )

        return payouts

    def _recordWalkAnomalies(self, plan: CommissionPlan, buyer: User, walk):
        if walk.outcome is WalkOutcome.DANGLING:
            plan.anomalies.append(Anomaly(
                event=ReferralEvents.DANGLING_REFERRER,
                username=buyer.username,
                details={
                    "missingReferrer": walk.dangling_username,
                    "level": walk.depth + 1,
                    "direct": walk.depth == 0,
                },
            ))
        elif walk.outcome is WalkOutcome.CYCLE:
            plan.anomalies.append(Anomaly(
                event=ReferralEvents.CYCLE_DETECTED,
                username=buyer.username,
                details={
                    "cycleStart": walk.cycle_start,
                    "selfReference": walk.is_self_reference,
                    "depth": walk.depth,
                },
            ))
        elif walk.outcome is WalkOutcome.DEPTH_LIMIT:
            plan.anomalies.append(Anomaly(
                event=ReferralEvents.DEPTH_LIMIT_REACHED,
                username=buyer.username,
                details={"maxDepth": walk.max_depth},
            ))
