"""
Rank ladder - ordering and resolution of rank tiers.
Loaded from the ranks table; no rank title is hard-coded anywhere.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
import logging

from sqlalchemy.orm import Session

from models.rank import Rank
from referral_engine.exceptions import RankLadderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankTier:
    """Immutable snapshot of one Rank row."""
    rankID: int
    title: str
    requiredPoints: int

    @classmethod
    def from_model(cls, rank: Rank) -> "RankTier":
        return cls(
            rankID=rank.rankID,
            title=rank.title,
            requiredPoints=int(rank.required_points)
        )


class RankLadder:
    """
    Strictly ordered ladder of rank tiers.

    Invariants (checked on construction):
        - at least one tier
        - thresholds are non-negative and unique
        - titles are unique
    The tier with the minimum threshold is the base (default) tier.
    """

    def __init__(self, tiers: Iterable[RankTier]):
        tiers = list(tiers)
        if not tiers:
            raise RankLadderError("Rank table is empty")

        thresholds = [t.requiredPoints for t in tiers]
        if len(set(thresholds)) != len(thresholds):
            raise RankLadderError(f"Duplicate rank thresholds: {sorted(thresholds)}")
        if any(p < 0 for p in thresholds):
            raise RankLadderError("Rank thresholds must be non-negative")

        titles = [t.title for t in tiers]
        if len(set(titles)) != len(titles):
            raise RankLadderError(f"Duplicate rank titles: {sorted(titles)}")

        # Highest threshold first
        self._tiers: List[RankTier] = sorted(tiers, key=lambda t: t.requiredPoints, reverse=True)
        self._by_title: Dict[str, RankTier] = {t.title: t for t in self._tiers}
        self._by_id: Dict[int, RankTier] = {t.rankID: t for t in self._tiers}

    @classmethod
    def from_ranks(cls, ranks: Iterable[Rank]) -> "RankLadder":
        return cls(RankTier.from_model(r) for r in ranks)

    def __len__(self) -> int:
        return len(self._tiers)

    def __repr__(self) -> str:
        steps = ", ".join(f"{t.title}>={t.requiredPoints}" for t in reversed(self._tiers))
        return f"<RankLadder({steps})>"

    @property
    def base(self) -> RankTier:
        """Minimum-threshold tier."""
        return self._tiers[-1]

    @property
    def tiers_descending(self) -> List[RankTier]:
        return list(self._tiers)

    @property
    def tiers_ascending(self) -> List[RankTier]:
        return list(reversed(self._tiers))

    def resolve(self, points: int) -> RankTier:
        """
        Tier whose threshold is the largest value <= points.

        Falls back to the base tier when nothing qualifies (e.g. the base
        threshold is above zero and the user has fewer points).
        """
        points = int(points or 0)
        for tier in self._tiers:
            if tier.requiredPoints <= points:
                return tier
        return self.base

    def by_title(self, title: str) -> Optional[RankTier]:
        return self._by_title.get(title)

    def by_id(self, rankID: Optional[int]) -> Optional[RankTier]:
        if rankID is None:
            return None
        return self._by_id.get(rankID)

    def next_higher(self, title: str) -> Optional[RankTier]:
        """Tier directly above `title`, None for the top tier."""
        ascending = self.tiers_ascending
        for position, tier in enumerate(ascending):
            if tier.title == title:
                return ascending[position + 1] if position + 1 < len(ascending) else None
        return None

    def compare(self, first: str, second: str) -> int:
        """
        Compare two tiers by threshold.

        Returns:
            1 if first > second, -1 if first < second, 0 if equal
        """
        a = self._by_title[first].requiredPoints
        b = self._by_title[second].requiredPoints
        return (a > b) - (a < b)


def resolve_rank(points: int, ranks: Iterable[Rank]) -> Rank:
    """
    Resolve a rank row for `points` from an iterable of Rank rows.

    Convenience for callers that hold ORM rows rather than a ladder.
    """
    ranks = list(ranks)
    tier = RankLadder.from_ranks(ranks).resolve(points)
    return next(r for r in ranks if r.rankID == tier.rankID)


def load_rank_ladder(session: Session) -> RankLadder:
    """
    Build the ladder from the ranks table.

    Raises:
        RankLadderError: If the table is empty or inconsistent
    """
    ranks = session.query(Rank).order_by(Rank.required_points.desc()).all()
    ladder = RankLadder.from_ranks(ranks)
    logger.debug(f"Loaded rank ladder: {ladder}")
    return ladder
