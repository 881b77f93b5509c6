"""
Rank management service.

Rank is a pure function of accumulated points over the rank ladder
(see referral_engine.config.ranks). This service persists the result.
"""
from typing import Dict, List, Optional, Tuple
from sqlalchemy.orm import Session
import logging

from models.user import User
from referral_engine.config.ranks import RankLadder, RankTier, load_rank_ladder

logger = logging.getLogger(__name__)


class RankService:
    """Service for resolving and persisting user ranks."""

    def __init__(self, session: Session, ladder: Optional[RankLadder] = None):
        self.session = session
        self._ladder = ladder

    @property
    def ladder(self) -> RankLadder:
        if self._ladder is None:
            self._ladder = load_rank_ladder(self.session)
        return self._ladder

    def resolveRank(self, points: int) -> RankTier:
        return self.ladder.resolve(points)

    def recalculateUserRank(self, user: User) -> Tuple[Optional[RankTier], RankTier]:
        """
        Re-resolve `user` from its current points and update rankID if needed.

        Does not flush or commit - the caller owns the transaction.

        Returns:
            (old tier or None, new tier)
        """
        oldTier = self.ladder.by_id(user.rankID)
        newTier = self.ladder.resolve(user.points or 0)

        if oldTier is None or oldTier.rankID != newTier.rankID:
            user.rankID = newTier.rankID
            logger.info(
                f"User {user.username} rank updated: "
                f"{oldTier.title if oldTier else 'No rank'} → {newTier.title} "
                f"({user.points} points)"
            )
        else:
            logger.debug(f"User {user.username} rank unchanged: {newTier.title} ({user.points} points)")

        return oldTier, newTier

    def recalculateAllRanks(self, dryRun: bool = False) -> Dict:
        """
        Resync every user's rank with its points.

        Args:
            dryRun: Report changes without writing

        Returns:
            Dict with counts and the list of changes
        """
        changes: List[Dict] = []
        users = self.session.query(User).order_by(User.userID).all()

        for user in users:
            oldTier = self.ladder.by_id(user.rankID)
            newTier = self.ladder.resolve(user.points or 0)
            if oldTier is not None and oldTier.rankID == newTier.rankID:
                continue

            changes.append({
                "username": user.username,
                "points": user.points,
                "oldRank": oldTier.title if oldTier else None,
                "newRank": newTier.title,
            })
            if not dryRun:
                user.rankID = newTier.rankID

        if not dryRun and changes:
            self.session.commit()

        logger.info(
            f"Rank resync {'(dry run) ' if dryRun else ''}checked {len(users)} users, "
            f"{len(changes)} changes"
        )

        return {
            "success": True,
            "dryRun": dryRun,
            "usersChecked": len(users),
            "changesCount": len(changes),
            "changes": changes,
        }
