# actions/__init__.py
"""
Admin actions: thin wrappers over the engine services that always return
a structured result dict and never raise.
"""
from actions.admin_actions import (
    approve_package_request,
    reject_package_request,
    check_referral_integrity,
)

__all__ = [
    'approve_package_request',
    'reject_package_request',
    'check_referral_integrity',
]
