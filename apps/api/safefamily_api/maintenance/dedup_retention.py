"""Webhook dedup retention loop.

Stripe stops redelivering an event after three days, so dedup records older
than the retention window (default: 72h) can no longer prevent a duplicate
and are deleted.

Run as a separate process:
    python -m safefamily_api.maintenance.dedup_retention
"""

import logging
import time
from typing import Optional

from sqlalchemy.orm import Session

from safefamily_api.billing.webhook_dedup import purge_expired_dedup
from safefamily_api.config.settings import load_config
from safefamily_api.db.engine import build_engine, build_sessionmaker
from safefamily_api.utils import configure_json_logging

logger = logging.getLogger(__name__)


def run_dedup_cleanup(session: Session, retention_hours: int) -> int:
    """Run one iteration of dedup retention cleanup.

    Returns:
        Number of dedup records deleted
    """
    return purge_expired_dedup(session, retention_hours)


def dedup_retention_loop(
    session_factory,
    interval_seconds: int,
    retention_hours: int,
    max_iterations: Optional[int] = None,
    sleep=time.sleep,
) -> None:
    """Purge expired dedup records every ``interval_seconds``.

    Args:
        session_factory: SQLAlchemy sessionmaker
        interval_seconds: Loop interval in seconds
        retention_hours: Records first seen before now - retention_hours are deleted
        max_iterations: Stop after N iterations (None = run forever)
        sleep: Sleep function (testing)
    """
    logger.info(
        "DEDUP_RETENTION_LOOP_STARTED",
        extra={"interval_seconds": interval_seconds, "retention_hours": retention_hours},
    )

    iterations = 0
    while max_iterations is None or iterations < max_iterations:
        iterations += 1
        try:
            with session_factory() as session:
                run_dedup_cleanup(session, retention_hours)
        except Exception:
            logger.error("DEDUP_RETENTION_LOOP_ERROR", exc_info=True)

        if max_iterations is None or iterations < max_iterations:
            sleep(interval_seconds)


def main() -> None:
    config = load_config()
    if config.json_logs:
        configure_json_logging(log_level=config.log_level)
    engine = build_engine(config.database_url)
    dedup_retention_loop(
        build_sessionmaker(engine),
        interval_seconds=config.dedup_purge_interval_seconds,
        retention_hours=config.dedup_retention_hours,
    )


if __name__ == "__main__":
    main()
