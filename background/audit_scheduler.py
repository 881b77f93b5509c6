# background/audit_scheduler.py
"""
Audit Scheduler - periodic dry-run integrity check of the referral graph.
Uses APScheduler; the audit never repairs anything on its own.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from core.db import get_db_session_ctx
from referral_engine.services.integrity_service import IntegrityService, CHECK_ALL

logger = logging.getLogger(__name__)


class AuditScheduler:
    """
    Background scheduler for integrity audits.
    """

    def __init__(self, intervalHours: Optional[int] = None):
        self.intervalHours = intervalHours or int(Config.get(Config.AUDIT_INTERVAL_HOURS))
        self.isRunning = False

        self.scheduler = BackgroundScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 300
            }
        )

        self.stats: Dict[str, Any] = {
            "auditsExecuted": 0,
            "errors": 0,
            "lastError": None,
            "startedAt": None,
            "lastExecutedAt": None,
            "lastIssuesCount": None,
        }

    def start(self):
        """Register the audit job and start the scheduler."""
        if self.isRunning:
            logger.warning("Audit Scheduler already running")
            return

        self.isRunning = True
        self.stats["startedAt"] = datetime.now(timezone.utc)

        self.scheduler.add_job(
            func=self._safe_audit_wrapper,
            trigger=IntervalTrigger(hours=self.intervalHours),
            id='integrity_audit',
            name='Referral Integrity Audit (dry run)',
            replace_existing=True
        )
        self.scheduler.start()

        logger.info(f"✓ Audit Scheduler started (every {self.intervalHours} hours)")

    def stop(self):
        """Stop scheduler gracefully."""
        if not self.isRunning:
            return

        self.isRunning = False
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        logger.info("✓ Audit Scheduler stopped")

    def _safe_audit_wrapper(self):
        """Safe wrapper so a failing audit never kills the scheduler."""
        try:
            self.runAudit()
        except Exception as e:
            logger.error(f"Error in integrity audit job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    def runAudit(self) -> Dict[str, Any]:
        """Run one dry-run audit of everything."""
        with get_db_session_ctx() as session:
            report = IntegrityService(session).runCheck(CHECK_ALL, fixIssues=False, dryRun=True)

        self.stats["auditsExecuted"] += 1
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)
        self.stats["lastIssuesCount"] = report["issuesCount"]

        if report["issuesCount"]:
            logger.warning(f"Integrity audit found {report['issuesCount']} issues")
        else:
            logger.info("Integrity audit found no issues")

        return report

    def getStatus(self) -> dict:
        """Get scheduler status."""
        jobs_info = []
        if self.scheduler.running:
            for job in self.scheduler.get_jobs():
                jobs_info.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None
                })

        return {
            "isRunning": self.isRunning,
            "schedulerRunning": self.scheduler.running,
            "intervalHours": self.intervalHours,
            "stats": self.stats,
            "jobs": jobs_info
        }
