"""
ML Scheduler - triggers each ML pipeline stage on its own interval.

Each stage runs in a fresh database session. A stage never overlaps with
itself, and missed runs are coalesced into one.
"""

import os
import signal
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cryptoadvisor.config import settings
from cryptoadvisor.log_config import logger
from cryptoadvisor.utils.errors import CryptoAdvisorError, OperationCancelledError
from jobs.ml_signal_cycle import load_feature_engine, run_ml_cycle

_shutdown = threading.Event()


def run_stage(stage: str, feature_engine=None) -> None:
    """Scheduler callback; failures are logged so the scheduler keeps running."""
    try:
        report = run_ml_cycle([stage], feature_engine=feature_engine, cancel_event=_shutdown)
        logger.info(f"Scheduled ML stage '{stage}' finished: {report}")
    except OperationCancelledError:
        logger.warning(f"Scheduled ML stage '{stage}' cancelled by shutdown")
    except CryptoAdvisorError as e:
        logger.error(f"Scheduled ML stage '{stage}' failed: {e.to_dict()}")


def build_scheduler(feature_engine=None) -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone="UTC")

    jobs = [
        ("refresh", IntervalTrigger(minutes=settings.ml_refresh_interval_minutes)),
        ("infer", IntervalTrigger(minutes=settings.ml_inference_interval_minutes)),
        ("resolve", IntervalTrigger(minutes=settings.ml_resolve_interval_minutes)),
        ("train", IntervalTrigger(hours=settings.ml_training_interval_hours)),
    ]
    for stage, trigger in jobs:
        scheduler.add_job(
            run_stage,
            trigger=trigger,
            args=[stage, feature_engine],
            id=f"ml_{stage}",
            name=f"ML {stage}",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(f"Scheduled ML stage '{stage}' ({trigger})")
    return scheduler


def main():
    if not settings.scheduler_enabled:
        logger.warning("Scheduler disabled (SCHEDULER_ENABLED=false); exiting")
        return

    feature_engine = load_feature_engine(os.environ.get("ML_FEATURE_ENGINE", ""))
    scheduler = build_scheduler(feature_engine)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down ML scheduler")
        _shutdown.set()
        scheduler.shutdown(wait=False)

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    logger.info("ML scheduler started")
    scheduler.start()


if __name__ == "__main__":
    main()
