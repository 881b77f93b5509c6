# models/listeners/ledger_listeners.py
"""
Ledger Event Listeners.

Architecture:
    Earning rows are written once, inside an approval transaction, and
    never touched again. User.balance / User.totalEarnings / User.points
    are moved with atomic SQL increments by the approval orchestrator.

    Earning UPDATE/DELETE through the ORM -> LedgerViolation (flush aborts)
    User.balance / totalEarnings set on a loaded object -> warning with stack
"""
import logging
import traceback

from sqlalchemy import event
from sqlalchemy.orm import attributes

logger = logging.getLogger(__name__)


def register_ledger_listeners():
    """
    Register mapper listeners that keep the Earning ledger append-only.

    Called once during application startup from models/listeners/__init__.py
    """
    from models.earning import Earning
    from referral_engine.exceptions import LedgerViolation

    def forbid_earning_update(mapper, connection, target):
        logger.error(
            f"Blocked UPDATE of earning {target.earningID} "
            f"(user={target.userID}, request={target.packageRequestID})"
        )
        raise LedgerViolation(f"Earning {target.earningID} is append-only and cannot be updated")

    def forbid_earning_delete(mapper, connection, target):
        logger.error(
            f"Blocked DELETE of earning {target.earningID} "
            f"(user={target.userID}, request={target.packageRequestID})"
        )
        raise LedgerViolation(f"Earning {target.earningID} is append-only and cannot be deleted")

    event.listen(Earning, 'before_update', forbid_earning_update)
    event.listen(Earning, 'before_delete', forbid_earning_delete)


# =========================================================================
# SAFETY: Log direct balance modification
# =========================================================================

def register_balance_protection():
    """
    Log warnings when User.balance / User.totalEarnings is assigned directly.

    Admin overrides are allowed, so this only warns.
    """
    from models.user import User

    unset = (None, attributes.NO_VALUE, attributes.NEVER_SET)

    def _warn(field, target, value, oldvalue):
        if oldvalue in unset or value == oldvalue:
            return
        stack = ''.join(traceback.format_stack()[-6:-2])
        logger.warning(
            f"DIRECT {field} modification detected! "
            f"user={target.username}, {oldvalue} → {value}\n"
            f"Stack:\n{stack}"
        )

    @event.listens_for(User.balance, 'set')
    def warn_direct_balance_set(target, value, oldvalue, initiator):
        _warn("balance", target, value, oldvalue)

    @event.listens_for(User.totalEarnings, 'set')
    def warn_direct_total_earnings_set(target, value, oldvalue, initiator):
        _warn("totalEarnings", target, value, oldvalue)
