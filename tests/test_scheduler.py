import logging
import unittest
from unittest.mock import Mock

logging.disable(logging.CRITICAL)


class BridgeSchedulerTests(unittest.TestCase):
    def test_bounded_ledger_gets_prune_job(self):
        from roombridge.scheduler import LEDGER_PRUNE_JOB_ID, BridgeScheduler
        from roombridge.services.comment_ledger import CommentLedger

        sched = BridgeScheduler()
        sched.scheduler = Mock()
        ledger = CommentLedger(max_entries=100)

        sched.schedule_ledger_pruning(ledger, 5)

        sched.scheduler.add_job.assert_called_once()
        kwargs = sched.scheduler.add_job.call_args.kwargs
        self.assertEqual(kwargs["id"], LEDGER_PRUNE_JOB_ID)
        self.assertEqual(kwargs["args"], [ledger])

    def test_unbounded_ledger_is_not_scheduled(self):
        from roombridge.scheduler import BridgeScheduler
        from roombridge.services.comment_ledger import CommentLedger

        sched = BridgeScheduler()
        sched.scheduler = Mock()

        sched.schedule_ledger_pruning(CommentLedger(), 5)

        sched.scheduler.add_job.assert_not_called()

    def test_prune_job_swallows_and_logs_errors(self):
        from roombridge.scheduler import BridgeScheduler

        ledger = Mock()
        ledger.prune.side_effect = RuntimeError("boom")

        BridgeScheduler()._prune_ledger_job(ledger)

        ledger.prune.assert_called_once()


if __name__ == "__main__":
    unittest.main()
