#!/usr/bin/env python3
"""
Display referral tree.

Shows the downline of a user (or every root) with rank, points and balance.
Cycles and dangling referrers are marked instead of looping.

Usage:
    python scripts/show_tree.py [--root USERNAME] [--max-depth DEPTH] [--stats]
"""

import sys
import os
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import func

from config import Config
from core.db import get_session
from models.user import User
from models.rank import Rank
from referral_engine.utils.chain_walker import ChainWalker, ReferralIndex

import logging

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def print_tree(session, root_user, max_depth=None):
    """Print ASCII tree of the downline."""
    index = ReferralIndex.preload(session)
    walker = ChainWalker(session, index)
    printed = set()

    def print_user(user, prefix="", is_last=True, depth=0):
        if max_depth and depth > max_depth:
            return

        connector = "└─ " if is_last else "├─ "
        rank_display = f"[{user.rank.title}]" if user.rank else "[no rank]"
        balance_display = f"${user.balance}" if user.balance and user.balance > 0 else ""

        if user.username in printed:
            print(f"{prefix}{connector}🔁 {user.username} (cycle)")
            return
        printed.add(user.username)

        print(
            f"{prefix}{connector}{user.username} {rank_display} "
            f"{user.points} pts {balance_display}"
        )

        children = [c for c in index.children_of(user.username) if c.username != user.username]
        for i, child in enumerate(children):
            is_last_child = (i == len(children) - 1)
            new_prefix = prefix + ("    " if is_last else "│   ")
            print_user(child, new_prefix, is_last_child, depth + 1)

    print("\n" + "=" * 80)
    print(f"REFERRAL TREE: {root_user.username}")
    print("=" * 80)
    print(f"Downline size: {walker.count_downline(root_user.username)}")
    print("=" * 80 + "\n")
    print_user(root_user)
    print("\n" + "=" * 80 + "\n")


def print_statistics(session):
    """Print database statistics."""
    total_users = session.query(User).count()
    roots = session.query(User).filter(User.referredBy.is_(None)).count()

    print("\n" + "=" * 80)
    print("DATABASE STATISTICS")
    print("=" * 80 + "\n")

    print(f"Total users: {total_users}")
    print(f"Root users:  {roots}")

    if total_users:
        print("\nUsers by rank:")
        rank_counts = session.query(
            Rank.title,
            func.count(User.userID)
        ).outerjoin(User, User.rankID == Rank.rankID).group_by(
            Rank.title, Rank.required_points
        ).order_by(Rank.required_points).all()

        for title, count in rank_counts:
            print(f"  {title:20} {count:5} ({count/total_users*100:.1f}%)")

        unranked = session.query(User).filter(User.rankID.is_(None)).count()
        print(f"  {'(no rank)':20} {unranked:5}")

    print("\n" + "=" * 80 + "\n")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Display referral tree')
    parser.add_argument('--root', help='Username of the subtree root (default: every root user)')
    parser.add_argument('--max-depth', type=int, help='Maximum depth to display')
    parser.add_argument('--stats', action='store_true', help='Show statistics only')
    args = parser.parse_args()

    Config.initialize_from_env()
    session = get_session()

    try:
        if args.stats:
            print_statistics(session)
            return

        if args.root:
            root = session.query(User).filter_by(username=args.root).first()
            if not root:
                print(f"❌ User {args.root} not found!")
                return
            roots = [root]
        else:
            roots = session.query(User).filter(User.referredBy.is_(None)).order_by(User.userID).all()

        for root in roots:
            print_tree(session, root, args.max_depth)
        print_statistics(session)

    finally:
        session.close()


if __name__ == "__main__":
    main()
