import unittest
from datetime import timedelta

import schedule

from payout_service import reconcile_worker
from payout_service.models import utcnow
from fakes import add_transaction, build_orchestrator, fund, make_session_factory

class BrokenReconciler:
    async def reconcile(self, **kwargs):
        raise RuntimeError("database went away")

class TestReconcileWorker(unittest.TestCase):
    def tearDown(self):
        schedule.clear()

    def test_run_once_reports_details(self):
        sf = make_session_factory()
        fund(sf, "m1", "1000")
        orchestrator, _, _ = build_orchestrator(sf)
        add_transaction(sf, status="processing", created_at=utcnow() - timedelta(minutes=10))

        summary = reconcile_worker.run_once(orchestrator.reconciler)

        self.assertEqual(summary.checked, 1)
        self.assertEqual(summary.results[0].action, "no_provider_ack_waiting")

    def test_failed_run_does_not_raise(self):
        self.assertIsNone(reconcile_worker.run_once(BrokenReconciler()))

    def test_schedule_registers_job(self):
        reconcile_worker.schedule_reconciliation(BrokenReconciler())

        self.assertEqual(len(schedule.get_jobs()), 1)
        self.assertEqual(schedule.get_jobs()[0].interval, reconcile_worker.settings.reconcile_interval_minutes)

if __name__ == "__main__":
    unittest.main()
