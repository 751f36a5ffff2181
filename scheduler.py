"""Periodic maintenance jobs.

- Outbox retry: rows left ``pending`` or ``failed`` (worker crash, Redis
  outage, handler error) are re-dispatched every OUTBOX_RETRY_MINUTES until
  they succeed or reach OUTBOX_MAX_ATTEMPTS.
- Tracker sweep: unread trackers idle for TRACKER_IDLE_SECONDS are closed,
  releasing their broker subscription.
"""

from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler

JOB_ID = "outbox_retry"
SWEEP_JOB_ID = "tracker_sweep"
SWEEP_MINUTES = 5


def init_scheduler(app) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(daemon=True, job_defaults={"coalesce": True, "max_instances": 1})

    def retry_outbox():
        from outbox import retry_pending
        with app.app_context():
            try:
                stats = retry_pending()
            except Exception:
                app.logger.exception("Scheduled outbox retry failed")
                return
            if stats["failed"]:
                app.logger.warning("Outbox retry left %d rows failing", stats["failed"])

    def sweep_trackers():
        from realtime import evict_idle_trackers
        try:
            evict_idle_trackers(app.config.get("TRACKER_IDLE_SECONDS", 1800))
        except Exception:
            app.logger.exception("Tracker sweep failed")

    minutes = app.config.get("OUTBOX_RETRY_MINUTES", 10)
    scheduler.add_job(retry_outbox, "interval", minutes=minutes, id=JOB_ID, replace_existing=True)
    scheduler.add_job(sweep_trackers, "interval", minutes=SWEEP_MINUTES, id=SWEEP_JOB_ID,
                      replace_existing=True)
    scheduler.start()
    app.logger.info("Scheduler started: outbox retry every %d min, tracker sweep every %d min",
                    minutes, SWEEP_MINUTES)
    return scheduler
