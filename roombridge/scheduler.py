"""Background scheduler for housekeeping jobs"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from roombridge.services.comment_ledger import CommentLedger

logger = logging.getLogger(__name__)

LEDGER_PRUNE_JOB_ID = "prune_comment_ledger"


class BridgeScheduler:
    """Scheduler for periodic bridge maintenance"""

    def __init__(self):
        self.scheduler = BackgroundScheduler()

    def start(self):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("Bridge scheduler started")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Bridge scheduler stopped")

    def schedule_ledger_pruning(self, ledger: CommentLedger, interval_minutes: int):
        """Prune the comment ledger every ``interval_minutes``.

        Nothing is scheduled for an unbounded ledger since prune() would never drop anything.
        """
        if ledger.max_entries <= 0 or interval_minutes <= 0:
            logger.info("Comment ledger is unbounded; pruning not scheduled")
            return

        self.scheduler.add_job(
            func=self._prune_ledger_job,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=LEDGER_PRUNE_JOB_ID,
            args=[ledger],
            replace_existing=True,
        )
        logger.info(
            f"Scheduled comment ledger pruning every {interval_minutes} minutes "
            f"(max {ledger.max_entries} entries)"
        )

    def _prune_ledger_job(self, ledger: CommentLedger):
        """Job function to prune the ledger"""
        try:
            ledger.prune()
        except Exception as e:
            logger.error(f"Comment ledger pruning failed: {e}")


# Global scheduler instance
scheduler = BridgeScheduler()
