# referral_engine/events/handlers.py
"""
Default event handlers: structured log lines for operators.
"""
import logging
from typing import Any, Dict

anomaly_logger = logging.getLogger("referral_engine.anomalies")
logger = logging.getLogger(__name__)


def _fields(data: Dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in sorted(data.items()) if key != "event")


def handle_anomaly(data: Dict[str, Any]):
    """Log a data-quality anomaly (dangling referrer, cycle, roll-up...)."""
    anomaly_logger.warning(f"[{data['event']}] {_fields(data)}")


def handle_package_processed(data: Dict[str, Any]):
    """Log an approval or rejection."""
    logger.info(f"[{data['event']}] {_fields(data)}")


def handle_rank_changed(data: Dict[str, Any]):
    logger.info(
        f"Rank changed for {data.get('username')}: "
        f"{data.get('oldRank') or 'No rank'} → {data.get('newRank')} "
        f"({data.get('points')} points)"
    )


def handle_audit_completed(data: Dict[str, Any]):
    level = logging.WARNING if data.get("issuesCount") else logging.INFO
    logger.log(level, f"[{data['event']}] {_fields(data)}")
