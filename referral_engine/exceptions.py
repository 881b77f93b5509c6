# referral_engine/exceptions.py
"""
Error taxonomy of the referral engine.

Data-quality anomalies (dangling referrer, cycle, depth limit) are NOT
exceptions - they travel as outcomes and anomaly records. Everything here
is either a state conflict the caller must treat as a no-op, bad input,
or a fatal condition that aborts the enclosing transaction.
"""


class ReferralEngineError(Exception):
    """Base class for all referral engine errors."""
    code = "ENGINE_ERROR"


class AlreadyProcessed(ReferralEngineError):
    """Approval/rejection attempted on a request that is no longer pending."""
    code = "ALREADY_PROCESSED"

    def __init__(self, requestId: int, status: str):
        self.requestId = requestId
        self.status = status
        super().__init__(f"Package request {requestId} is already {status}")


class PackageRequestNotFound(ReferralEngineError):
    code = "REQUEST_NOT_FOUND"

    def __init__(self, requestId: int):
        self.requestId = requestId
        super().__init__(f"Package request {requestId} not found")


class ApprovalDataError(ReferralEngineError):
    """Buyer or package row referenced by a request is missing."""
    code = "APPROVAL_DATA_ERROR"


class RankLadderError(ReferralEngineError):
    """Rank table is empty or violates the ladder invariants."""
    code = "RANK_LADDER_ERROR"


class RemediationError(ReferralEngineError):
    """Auditor apply mode was asked for an impossible repair."""
    code = "REMEDIATION_ERROR"


class LedgerViolation(ReferralEngineError):
    """Attempt to update or delete an append-only Earning row."""
    code = "LEDGER_VIOLATION"
