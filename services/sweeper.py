"""Background scheduler that drives hold expiry."""
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from services import booking_service

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Runs booking_service.sweep() on a fixed interval inside an app context."""

    def __init__(self, app=None):
        self.app = None
        self.scheduler = None
        self.running = False
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        app.extensions["expiry_sweeper"] = self

    def start(self):
        if self.running:
            logger.warning("Sweeper is already running")
            return

        interval = self.app.config.get("SWEEP_INTERVAL_SECONDS", 30)
        self.scheduler = BackgroundScheduler(daemon=True)
        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(seconds=interval),
            id="booking_expiry_sweep",
            name="Expire unpaid bookings",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self.running = True
        logger.info("Expiry sweeper started (every %ss)", interval)

    def stop(self):
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Expiry sweeper stopped")

    def run_once(self, now=None):
        with self.app.app_context():
            try:
                return booking_service.sweep(now=now)
            except Exception:
                logger.exception("Expiry sweep failed")
                raise


sweeper = ExpirySweeper()
