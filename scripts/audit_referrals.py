#!/usr/bin/env python3
"""
Run the referral integrity audit.

Usage:
    python scripts/audit_referrals.py                       # dry run, all checks
    python scripts/audit_referrals.py --check referrals
    python scripts/audit_referrals.py --check referrals --apply
    python scripts/audit_referrals.py --apply --remediation reassign --fallback admin
"""

import sys
import os
import argparse
import json

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from core.db import get_session
from models.listeners import register_all_listeners
from actions.admin_actions import check_referral_integrity
from referral_engine.services.integrity_service import CHECK_TYPES, CHECK_ALL, REMEDIATIONS, REMEDIATION_DETACH

import logging

logging.basicConfig(level=logging.INFO)


def main():
    parser = argparse.ArgumentParser(description='Referral integrity audit')
    parser.add_argument('--check', choices=CHECK_TYPES, default=CHECK_ALL, help='What to check')
    parser.add_argument('--apply', action='store_true', help='Apply fixes (default: dry run)')
    parser.add_argument('--remediation', choices=REMEDIATIONS, default=REMEDIATION_DETACH,
                        help='How to repair broken referral edges')
    parser.add_argument('--fallback', help='Fallback referrer for --remediation reassign')
    parser.add_argument('--json', action='store_true', help='Print the full report as JSON')
    args = parser.parse_args()

    Config.initialize_from_env()
    register_all_listeners()
    session = get_session()

    try:
        result = check_referral_integrity(session, {
            "checkType": args.check,
            "fixIssues": args.apply,
            "dryRun": not args.apply,
            "remediation": args.remediation,
            "fallbackReferrer": args.fallback,
        })

        if args.json or not result["success"]:
            print(json.dumps(result, indent=2, default=str))
            sys.exit(0 if result["success"] else 1)

        report = result["result"]
        print("\n" + "=" * 80)
        print(f"INTEGRITY AUDIT: {report['checkType']} ({'dry run' if report['dryRun'] else 'APPLY'})")
        print("=" * 80)
        print(f"Issues:        {report['issuesCount']}")
        print(f"Fixes applied: {report['fixesApplied']}")
        print(f"Fixes failed:  {report['fixesFailed']}")
        print("\nStatistics:")
        print(json.dumps(report["statistics"], indent=2, default=str))
        print("=" * 80 + "\n")

    finally:
        session.close()


if __name__ == "__main__":
    main()
