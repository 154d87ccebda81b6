from __future__ import annotations

import unittest

from support import AppTestCase

from tradesafe.celery_app import create_celery_app


class CeleryTasksTestCase(AppTestCase):
    def test_beat_schedule_targets_registered_tasks(self):
        celery = create_celery_app(self.app)
        import tradesafe.tasks.settlement_tasks  # noqa: F401

        registered = set(celery.tasks.keys())
        for entry in celery.conf.beat_schedule.values():
            self.assertIn(entry["task"], registered)
        self.assertIn("tradesafe.tasks.settlement_tasks.process_payment_webhook", registered)

    def test_auto_completion_task_runs_in_app_context(self):
        celery = create_celery_app(self.app)
        import tradesafe.tasks.settlement_tasks  # noqa: F401

        task = celery.tasks["tradesafe.tasks.settlement_tasks.run_auto_completion"]
        result = task.apply(kwargs={"trace_id": "t-1"}).get()
        self.assertTrue(result["ok"])
        self.assertIn("completed", result)


if __name__ == "__main__":
    unittest.main()
