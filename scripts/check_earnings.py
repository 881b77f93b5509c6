#!/usr/bin/env python3
"""
Check earnings of an approved package request.

Displays the ledger rows written by the approval and reconciles a user's
monetary earnings against totalEarnings.

Usage:
    python scripts/check_earnings.py --request-id 123
    python scripts/check_earnings.py --last
    python scripts/check_earnings.py --user alice
"""

import sys
import os
import argparse
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import func

from config import Config
from core.db import get_session
from models.user import User
from models.earning import Earning, MONETARY_TYPES
from models.package_request import PackageRequest, STATUS_APPROVED

import logging

logging.basicConfig(level=logging.WARNING)


def show_request(session, request):
    buyer = session.get(User, request.userID)
    package = request.package

    print("\n" + "=" * 80)
    print("EARNINGS CHECK")
    print("=" * 80)
    print(f"\nRequest ID: {request.requestID} ({request.status})")
    print(f"Buyer: {buyer.username if buyer else '<deleted>'} (ID: {request.userID})")
    print(f"Package: {package.package_name if package else request.packageID}")
    print(f"Processed: {request.processedAt}")

    earnings = session.query(Earning).filter_by(
        packageRequestID=request.requestID
    ).order_by(Earning.earningID).all()

    if not earnings:
        print("\n❌ No earnings found for this request")
        return

    print(f"\n{len(earnings)} earning(s) found:")
    print("-" * 80)

    total_paid = Decimal("0")
    for earning in earnings:
        user = session.get(User, earning.userID)
        name = user.username if user else "<deleted>"
        print(f"{name:20} {earning.type:20} {earning.amount:>10}  {earning.description or ''}")
        if earning.type in MONETARY_TYPES:
            total_paid += earning.amount

    print("-" * 80)
    print(f"\nTotal paid: ${total_paid}")

    if package:
        print(f"Direct rate:   ${package.package_direct_commission}")
        print(f"Indirect rate: ${package.package_indirect_commission}")
    print("\n" + "=" * 80 + "\n")


def reconcile_user(session, user):
    monetary = session.query(func.coalesce(func.sum(Earning.amount), 0)).filter(
        Earning.userID == user.userID,
        Earning.type.in_(MONETARY_TYPES)
    ).scalar()
    monetary = Decimal(str(monetary))

    print(f"\n{user.username}:")
    print(f"  Ledger (monetary): ${monetary}")
    print(f"  totalEarnings:     ${user.totalEarnings}")
    print(f"  balance:           ${user.balance}")

    if monetary == Decimal(str(user.totalEarnings)):
        print("\n✅ Ledger reconciles with totalEarnings")
    else:
        print("\n⚠️  WARNING: ledger and totalEarnings differ!")


def main():
    """Check earnings."""
    parser = argparse.ArgumentParser(description='Check earnings of a package request')
    parser.add_argument('--request-id', type=int, help='Package request ID to check')
    parser.add_argument('--last', action='store_true', help='Check last approved request')
    parser.add_argument('--user', help='Reconcile ledger against totalEarnings for a user')
    args = parser.parse_args()

    Config.initialize_from_env()
    session = get_session()

    try:
        if args.user:
            user = session.query(User).filter_by(username=args.user).first()
            if not user:
                print(f"❌ User {args.user} not found")
                return
            reconcile_user(session, user)
            return

        if args.last:
            request = session.query(PackageRequest).filter_by(
                status=STATUS_APPROVED
            ).order_by(PackageRequest.processedAt.desc()).first()
        elif args.request_id:
            request = session.get(PackageRequest, args.request_id)
        else:
            print("❌ Specify --request-id, --last or --user")
            return

        if not request:
            print("❌ Package request not found")
            return

        show_request(session, request)

    finally:
        session.close()


if __name__ == "__main__":
    main()
