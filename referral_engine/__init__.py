# referral_engine/__init__.py
"""
Referral Engine - commission distribution and rank propagation over a
username-keyed referral tree.
"""

# Services
from referral_engine.services.commission_service import CommissionService, CommissionPlan, Payout, Anomaly
from referral_engine.services.rank_service import RankService
from referral_engine.services.approval_service import PackageApprovalService
from referral_engine.services.integrity_service import IntegrityService

# Rank ladder
from referral_engine.config.ranks import RankLadder, RankTier, resolve_rank, load_rank_ladder

# Utilities
from referral_engine.utils.chain_walker import ChainWalker, ReferralIndex, WalkOutcome

# Events
from referral_engine.events.event_bus import eventBus, ReferralEvents

# Errors
from referral_engine.exceptions import (
    ReferralEngineError,
    AlreadyProcessed,
    PackageRequestNotFound,
    ApprovalDataError,
    RankLadderError,
    RemediationError,
    LedgerViolation,
)

__all__ = [
    # Services
    'CommissionService',
    'CommissionPlan',
    'Payout',
    'Anomaly',
    'RankService',
    'PackageApprovalService',
    'IntegrityService',

    # Ranks
    'RankLadder',
    'RankTier',
    'resolve_rank',
    'load_rank_ladder',

    # Utils
    'ChainWalker',
    'ReferralIndex',
    'WalkOutcome',

    # Events
    'eventBus',
    'ReferralEvents',

    # Errors
    'ReferralEngineError',
    'AlreadyProcessed',
    'PackageRequestNotFound',
    'ApprovalDataError',
    'RankLadderError',
    'RemediationError',
    'LedgerViolation',
]
