# tests/test_rank_ladder.py
"""
Tests for rank resolution and the rank service.
"""
import pytest

from models import Rank, User
from referral_engine.config.ranks import RankLadder, RankTier, resolve_rank, load_rank_ladder
from referral_engine.exceptions import RankLadderError
from referral_engine.services.rank_service import RankService


def tiers(*pairs):
    return [RankTier(rankID=i + 1, title=title, requiredPoints=points) for i, (title, points) in enumerate(pairs)]


# =============================================================================
# TEST CLASS: Resolution
# =============================================================================

class TestResolve:

    @pytest.mark.parametrize("points, expected", [
        (0, "Consultant"),
        (999, "Consultant"),
        (1000, "Manager"),
        (1999, "Manager"),
        (2000, "Sapphire Manager"),
        (8000, "Diamond"),
        (23999, "Diamond"),
        (24000, "Sapphire Diamond"),
        (10 ** 9, "Sapphire Diamond"),
    ])
    def test_largest_threshold_not_above_points(self, ladder, points, expected):
        assert ladder.resolve(points).title == expected

    def test_monotonic(self, ladder):
        """
        TEST: More points never resolve to a lower tier.
        """
        previous = ladder.resolve(0).requiredPoints
        for points in range(0, 30000, 250):
            current = ladder.resolve(points).requiredPoints
            assert current >= previous
            previous = current

    def test_falls_back_to_base_below_every_threshold(self):
        ladder = RankLadder(tiers(("Bronze", 100), ("Silver", 500)))

        assert ladder.resolve(0).title == "Bronze"
        assert ladder.base.title == "Bronze"

    def test_none_points_is_zero(self, ladder):
        assert ladder.resolve(None).title == "Consultant"

    def test_titles_come_from_table(self, session):
        session.add_all([Rank(title="Rookie", required_points=0), Rank(title="Legend", required_points=10)])
        session.commit()

        ladder = load_rank_ladder(session)

        assert [t.title for t in ladder.tiers_descending] == ["Legend", "Rookie"]
        assert ladder.resolve(10).title == "Legend"

    def test_resolve_rank_returns_row(self, session, ranks):
        row = resolve_rank(1500, session.query(Rank).all())

        assert isinstance(row, Rank)
        assert row.title == "Manager"


# =============================================================================
# TEST CLASS: Ladder invariants
# =============================================================================

class TestLadderInvariants:

    def test_empty_table(self, session):
        with pytest.raises(RankLadderError):
            load_rank_ladder(session)

    def test_duplicate_thresholds(self):
        with pytest.raises(RankLadderError):
            RankLadder(tiers(("A", 0), ("B", 0)))

    def test_duplicate_titles(self):
        with pytest.raises(RankLadderError):
            RankLadder(tiers(("A", 0), ("A", 10)))

    def test_negative_threshold(self):
        with pytest.raises(RankLadderError):
            RankLadder(tiers(("A", -1), ("B", 10)))

    def test_ordering_helpers(self, ladder):
        assert ladder.next_higher("Manager").title == "Sapphire Manager"
        assert ladder.next_higher("Sapphire Diamond") is None
        assert ladder.compare("Diamond", "Manager") == 1
        assert ladder.compare("Manager", "Diamond") == -1
        assert ladder.compare("Manager", "Manager") == 0
        assert len(ladder) == 5


# =============================================================================
# TEST CLASS: RankService
# =============================================================================

class TestRankService:

    def test_recalculate_user_rank(self, session, make_user, ranks):
        user = make_user("alice", points=0)
        user.points = 2500

        oldTier, newTier = RankService(session).recalculateUserRank(user)

        assert oldTier.title == "Consultant"
        assert newTier.title == "Sapphire Manager"
        assert user.rankID == ranks["Sapphire Manager"].rankID

    def test_unranked_user_gets_base(self, session, make_user, ranks):
        user = make_user("bob", rank=None)
        user.rankID = None

        oldTier, newTier = RankService(session).recalculateUserRank(user)

        assert oldTier is None
        assert newTier.title == "Consultant"
        assert user.rankID == ranks["Consultant"].rankID

    def test_recalculate_all_dry_run(self, session, make_user, ranks):
        make_user("carol", points=9000, rank="Consultant")
        make_user("dave", points=10)

        report = RankService(session).recalculateAllRanks(dryRun=True)

        assert report["changesCount"] == 1
        assert report["changes"][0]["newRank"] == "Diamond"
        session.expire_all()
        assert session.query(User).filter_by(username="carol").one().rankID == ranks["Consultant"].rankID

    def test_recalculate_all_apply(self, session, make_user, ranks):
        make_user("carol", points=9000, rank="Consultant")

        report = RankService(session).recalculateAllRanks()

        assert report["changesCount"] == 1
        session.expire_all()
        assert session.query(User).filter_by(username="carol").one().rankID == ranks["Diamond"].rankID
        assert RankService(session).recalculateAllRanks()["changesCount"] == 0
