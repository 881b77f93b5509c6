#!/usr/bin/env python3
"""
Approve or reject a package request from the command line.

Usage:
    python scripts/process_request.py approve 123 [--notes "paid via bank"]
    python scripts/process_request.py reject 123 [--notes "invalid txid"]
"""

import sys
import os
import argparse
import json

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from core.db import get_session
from models.listeners import register_all_listeners
from referral_engine.events.setup import setup_event_handlers
from actions.admin_actions import approve_package_request, reject_package_request

import logging

logging.basicConfig(level=logging.INFO)


def main():
    parser = argparse.ArgumentParser(description='Process a package request')
    parser.add_argument('action', choices=['approve', 'reject'])
    parser.add_argument('request_id', type=int, help='Package request ID')
    parser.add_argument('--notes', help='Admin notes stored on the request')
    args = parser.parse_args()

    Config.initialize_from_env()
    register_all_listeners()
    setup_event_handlers()
    session = get_session()

    try:
        if args.action == 'approve':
            result = approve_package_request(session, args.request_id, args.notes)
        else:
            result = reject_package_request(session, args.request_id, args.notes)

        print(json.dumps(result, indent=2, default=str))
        sys.exit(0 if result["success"] else 1)

    finally:
        session.close()


if __name__ == "__main__":
    main()
