import argparse
import logging
import signal
import time
from datetime import timedelta

from journey_engine.core.clock import utcnow
from journey_engine.core.config import settings
from journey_engine.core.observability import log_event, setup_observability
from journey_engine.db.session import SessionLocal
from journey_engine.services.engine import EngineScheduler
from journey_engine.services.rate_limiter import prune_expired_permits

PRUNE_INTERVAL = timedelta(hours=1)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Advance due journey enrollments.")
    parser.add_argument("--once", action="store_true", help="run a single tick and exit")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.engine_worker_interval_seconds,
        help="seconds to sleep between ticks that found no work",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.engine_tick_batch_size,
        help="maximum enrollments claimed per tick",
    )
    return parser.parse_args(argv)


def run(*, once: bool, interval: float, batch_size: int) -> int:
    scheduler = EngineScheduler()
    stopping = False

    def _stop(signum, frame):
        nonlocal stopping
        stopping = True

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    log_event("worker_started", worker_id=scheduler.worker_id, interval=interval, batch_size=batch_size)
    last_prune = None
    while not stopping:
        claimed = 0
        with SessionLocal() as db:
            try:
                summary = scheduler.tick(db, limit=batch_size)
                claimed = summary.claimed
                now = utcnow()
                if last_prune is None or now - last_prune >= PRUNE_INTERVAL:
                    removed = prune_expired_permits(db, now=now)
                    db.commit()
                    last_prune = now
                    log_event("rate_limit_permits_pruned", worker_id=scheduler.worker_id, removed=removed)
            except Exception as exc:  # noqa: BLE001
                db.rollback()
                log_event("worker_tick_failed", level=logging.ERROR, worker_id=scheduler.worker_id, error=str(exc))
        if once:
            break
        # a full batch means more work is probably due
        if claimed < batch_size:
            time.sleep(interval)

    log_event("worker_stopped", worker_id=scheduler.worker_id)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    setup_observability()
    return run(once=args.once, interval=args.interval, batch_size=args.batch_size)


if __name__ == "__main__":
    raise SystemExit(main())
