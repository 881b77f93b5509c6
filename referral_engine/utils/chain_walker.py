# referral_engine/utils/chain_walker.py
"""
Safe referral chain walking utilities.

The parent pointer (User.referredBy) is a plain username string, so the
graph can contain dangling edges, self-references and cycles. Every walk
here is bounded and visited-set guarded; abnormal terminations are
reported as WalkOutcome values instead of exceptions.
"""
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

from config import Config
from models.user import User

logger = logging.getLogger(__name__)

# Bound used when checking whether a new edge would close a loop
CYCLE_CHECK_MAX_DEPTH = 1000


class WalkOutcome(Enum):
    """How an upline walk terminated."""
    ROOT = "root"
    CYCLE = "cycle"
    DANGLING = "dangling"
    DEPTH_LIMIT = "depth_limit"


@dataclass(frozen=True)
class DownlineMember:
    user: User
    level: int


class ReferralIndex:
    """
    Username -> User resolution cache.

    Lazy mode (default) queries one username at a time and remembers the
    answer, misses included. Preloaded mode loads the whole users table
    once together with a children map, for batch scans.
    """

    def __init__(self, session: Session):
        self.session = session
        self._by_username: Dict[str, Optional[User]] = {}
        self._children: Optional[Dict[str, List[User]]] = None
        self._preloaded = False

    @classmethod
    def preload(cls, session: Session) -> "ReferralIndex":
        """Build a fully loaded index (one query)."""
        index = cls(session)
        children: Dict[str, List[User]] = defaultdict(list)

        for user in session.query(User).order_by(User.userID).all():
            index._by_username[user.username] = user
            if user.referredBy:
                children[user.referredBy].append(user)

        index._children = children
        index._preloaded = True
        logger.debug(f"ReferralIndex preloaded: {len(index._by_username)} users")
        return index

    @property
    def is_preloaded(self) -> bool:
        return self._preloaded

    def get(self, username: str) -> Optional[User]:
        if username in self._by_username:
            return self._by_username[username]
        if self._preloaded:
            return None

        user = self.session.query(User).filter_by(username=username).first()
        self._by_username[username] = user
        return user

    def exists(self, username: str) -> bool:
        return self.get(username) is not None

    def children_of(self, username: str) -> List[User]:
        if self._children is not None:
            return list(self._children.get(username, []))
        return self.session.query(User).filter(
            User.referredBy == username
        ).order_by(User.userID).all()

    def users(self) -> List[User]:
        """All known users (complete only for a preloaded index)."""
        return [u for u in self._by_username.values() if u is not None]


class UplineWalk:
    """
    Lazy walk from a user up through referredBy.

    Iterating yields (ancestor, level) pairs, level 1 being the parent.
    Once exhausted, `outcome` tells why the walk stopped; it stays None
    if the caller breaks out early.

    Example:
        walk = walker.walk_upline("carol")
        for ancestor, level in walk:
            print(level, ancestor.username)
        if walk.outcome is WalkOutcome.CYCLE:
            print("cycle at", walk.cycle_start)
    """

    def __init__(self, index: ReferralIndex, username: str, max_depth: int):
        self.index = index
        self.username = username
        self.max_depth = max_depth

        self.outcome: Optional[WalkOutcome] = None
        self.depth = 0
        self.path: List[str] = []
        self.cycle_start: Optional[str] = None
        self.dangling_username: Optional[str] = None
        self._started = False

    def __iter__(self) -> Iterator[Tuple[User, int]]:
        if self._started:
            raise RuntimeError("UplineWalk can only be iterated once")
        self._started = True
        return self._walk()

    def _walk(self) -> Iterator[Tuple[User, int]]:
        current = self.index.get(self.username)
        if current is None:
            self.dangling_username = self.username
            self._finish(WalkOutcome.DANGLING)
            return

        visited = {current.username}
        self.path.append(current.username)
        level = 0

        while True:
            parentName = current.referredBy
            if not parentName:
                self._finish(WalkOutcome.ROOT)
                return

            if parentName in visited:
                self.cycle_start = parentName
                self._finish(WalkOutcome.CYCLE)
                return

            if level >= self.max_depth:
                self._finish(WalkOutcome.DEPTH_LIMIT)
                return

            parent = self.index.get(parentName)
            if parent is None:
                self.dangling_username = parentName
                self._finish(WalkOutcome.DANGLING)
                return

            level += 1
            visited.add(parentName)
            self.path.append(parentName)
            self.depth = level

            yield parent, level

            current = parent

    def _finish(self, outcome: WalkOutcome):
        self.outcome = outcome
        logger.debug(
            f"Upline walk from {self.username} ended: {outcome.value} "
            f"(depth={self.depth}, cycle_start={self.cycle_start}, "
            f"dangling={self.dangling_username})"
        )

    def exhaust(self) -> List[Tuple[User, int]]:
        """Run the walk to the end and return every step."""
        return list(self)

    @property
    def is_self_reference(self) -> bool:
        """Cycle of length zero: the user refers to itself."""
        return (
            self.outcome is WalkOutcome.CYCLE
            and self.depth == 0
            and self.cycle_start == self.username
        )

    @property
    def cycle_members(self) -> List[str]:
        """Usernames forming the loop, in walk order (empty if no cycle)."""
        if self.outcome is not WalkOutcome.CYCLE or self.cycle_start not in self.path:
            return []
        return self.path[self.path.index(self.cycle_start):]


class ChainWalker:
    """
    Safe utilities for walking referral upline/downline chains.
    Prevents infinite loops and reports chain anomalies as outcomes.
    """

    def __init__(
            self,
            session: Session,
            index: Optional[ReferralIndex] = None,
            max_depth: Optional[int] = None
    ):
        self.session = session
        self.index = index or ReferralIndex(session)
        self.max_depth = max_depth if max_depth is not None else Config.get(Config.MAX_UPLINE_DEPTH)

    def walk_upline(self, username: str, max_depth: Optional[int] = None) -> UplineWalk:
        """
        Walk up the upline chain of `username`.

        Args:
            username: Starting user (not included in the walk)
            max_depth: Maximum number of ancestors to visit

        Returns:
            UplineWalk iterable; inspect .outcome after iterating
        """
        return UplineWalk(self.index, username, max_depth if max_depth is not None else self.max_depth)

    def walk_downline(self, username: str, max_depth: Optional[int] = None) -> List[DownlineMember]:
        """
        Collect the whole descendant subtree of `username`.

        Iterative breadth-first traversal with a visited set, so cycles and
        very deep trees are safe.

        Args:
            username: Root of the subtree (not included)
            max_depth: Optional level limit, None for the full subtree

        Returns:
            Members in breadth-first order with their level (1 = direct)
        """
        root = self.index.get(username)
        if root is None:
            logger.warning(f"Downline walk requested for unknown user {username}")
            return []

        visited = {root.username}
        queue = deque([(root, 0)])
        members: List[DownlineMember] = []

        while queue:
            node, level = queue.popleft()
            if max_depth is not None and level >= max_depth:
                continue

            for child in self.index.children_of(node.username):
                if child.username in visited:
                    if child.username != node.username:
                        logger.warning(
                            f"Cycle detected in downline of {username} at {child.username}"
                        )
                    continue

                visited.add(child.username)
                members.append(DownlineMember(user=child, level=level + 1))
                queue.append((child, level + 1))

        return members

    def get_upline_chain(self, username: str, max_depth: Optional[int] = None) -> List[User]:
        """
        Get list of all users in upline chain.

        Returns:
            List of users from immediate parent to the last reachable ancestor
        """
        return [user for user, _level in self.walk_upline(username, max_depth)]

    def count_downline(self, username: str, max_depth: Optional[int] = None) -> int:
        """Count total number of users in downline."""
        return len(self.walk_downline(username, max_depth))

    def would_create_cycle(self, username: str, newReferrer: str) -> bool:
        """
        Check whether setting username.referredBy = newReferrer closes a loop.

        A walk that cannot finish within CYCLE_CHECK_MAX_DEPTH is treated as
        a cycle, so callers refuse the edge.
        """
        if username == newReferrer:
            return True

        if self.index.get(newReferrer) is None:
            return False

        walk = self.walk_upline(newReferrer, CYCLE_CHECK_MAX_DEPTH)
        for ancestor, _level in walk:
            if ancestor.username == username:
                return True

        if walk.outcome is WalkOutcome.DEPTH_LIMIT:
            logger.warning(
                f"Cycle check {username} -> {newReferrer} hit depth limit "
                f"{CYCLE_CHECK_MAX_DEPTH}, refusing edge"
            )
            return True

        return False
