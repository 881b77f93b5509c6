# actions/admin_actions.py
"""
Administrative trigger surface.

Every action returns a structured dict ({"success", "code", ...}) and
never raises: conflicts and failures are reported as codes, with the
traceback going to the log instead of the caller.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from referral_engine.exceptions import ReferralEngineError, AlreadyProcessed, RemediationError
from referral_engine.services.approval_service import PackageApprovalService
from referral_engine.services.integrity_service import IntegrityService, CHECK_ALL, REMEDIATION_DETACH

logger = logging.getLogger(__name__)

CODE_INVALID_CHECK_TYPE = "INVALID_CHECK_TYPE"
CODE_TRANSACTION_FAILED = "TRANSACTION_FAILED"
CODE_AUDIT_COMPLETED = "AUDIT_COMPLETED"


def _failure(code: str, message: str, **extra) -> Dict[str, Any]:
    return {"success": False, "code": code, "message": message, **extra}


def approve_package_request(session: Session, requestId: int, adminNotes: Optional[str] = None) -> Dict[str, Any]:
    """
    Approve a pending package request.

    Returns:
        Approval summary on success; on failure a dict with code
        ALREADY_PROCESSED, REQUEST_NOT_FOUND, APPROVAL_DATA_ERROR,
        RANK_LADDER_ERROR or TRANSACTION_FAILED
    """
    try:
        return PackageApprovalService(session).approve(requestId, adminNotes)

    except AlreadyProcessed as e:
        logger.info(f"Approval of request {requestId} ignored: {e}")
        return _failure(e.code, str(e), requestId=requestId, status=e.status)

    except ReferralEngineError as e:
        logger.error(f"Approval of request {requestId} failed: {e}")
        return _failure(e.code, str(e), requestId=requestId)

    except Exception as e:
        logger.error(f"Approval of request {requestId} failed: {e}", exc_info=True)
        return _failure(CODE_TRANSACTION_FAILED, "Package approval failed, nothing was changed", requestId=requestId)


def reject_package_request(session: Session, requestId: int, adminNotes: Optional[str] = None) -> Dict[str, Any]:
    """Reject a pending package request. Same result codes as approval."""
    try:
        return PackageApprovalService(session).reject(requestId, adminNotes)

    except AlreadyProcessed as e:
        logger.info(f"Rejection of request {requestId} ignored: {e}")
        return _failure(e.code, str(e), requestId=requestId, status=e.status)

    except ReferralEngineError as e:
        logger.error(f"Rejection of request {requestId} failed: {e}")
        return _failure(e.code, str(e), requestId=requestId)

    except Exception as e:
        logger.error(f"Rejection of request {requestId} failed: {e}", exc_info=True)
        return _failure(CODE_TRANSACTION_FAILED, "Package rejection failed, nothing was changed", requestId=requestId)


def check_referral_integrity(session: Session, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Run the integrity auditor.

    Args:
        params: {checkType, fixIssues, dryRun, remediation, fallbackReferrer};
            defaults: all, False, True, detach, None

    Returns:
        {"success": True, "code": "AUDIT_COMPLETED", "result": report}
        or a failure dict
    """
    params = params or {}
    checkType = params.get("checkType", CHECK_ALL)

    try:
        report = IntegrityService(session).runCheck(
            checkType=checkType,
            fixIssues=bool(params.get("fixIssues", False)),
            dryRun=bool(params.get("dryRun", True)),
            remediation=params.get("remediation", REMEDIATION_DETACH),
            fallbackReferrer=params.get("fallbackReferrer"),
        )
        return {"success": True, "code": CODE_AUDIT_COMPLETED, "result": report}

    except ValueError as e:
        return _failure(CODE_INVALID_CHECK_TYPE, str(e))

    except RemediationError as e:
        return _failure(e.code, str(e))

    except Exception as e:
        session.rollback()
        logger.error(f"Integrity check '{checkType}' failed: {e}", exc_info=True)
        return _failure(CODE_TRANSACTION_FAILED, f"Integrity check failed: {e}")
