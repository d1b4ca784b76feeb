from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from claimflow.core.config import Settings, get_settings
from claimflow.core.dependencies import SessionLocal, session_scope
from claimflow.services.event_outbox import deliver_domain_events_once
from claimflow.services.notification_outbox import process_notification_outbox_once
from claimflow.services.participant_approval import skip_expired_approvals

logger = logging.getLogger(__name__)


def _clamp(value, low: int, high: int, default: int) -> int:
    return int(max(low, min(high, int(value or default))))


def run_job_once(job: Callable[[Session], int], *, factory=None) -> int:
    """Run one unit of background work in its own committed session."""
    with session_scope(factory) as db:
        return job(db)


async def _periodic_loop(
    name: str,
    job: Callable[[Session], int],
    *,
    interval_seconds: int,
    enabled: Callable[[Settings], bool],
) -> None:
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if not settings.enable_recurring_jobs or not enabled(settings) or SessionLocal is None:
                await asyncio.sleep(interval_seconds)
                continue

            processed = run_job_once(job)
            if processed:
                logger.info("%s processed %s item(s)", name, processed)
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s worker error", name)
            await asyncio.sleep(error_sleep)


def start_approval_expiry_worker() -> asyncio.Task:
    settings = get_settings()
    interval = _clamp(settings.approval_expiry_interval_seconds, 30, 3600, 300)
    return asyncio.create_task(
        _periodic_loop(
            "Approval expiry",
            skip_expired_approvals,
            interval_seconds=interval,
            enabled=lambda s: True,
        )
    )


def start_event_outbox_worker() -> asyncio.Task:
    settings = get_settings()
    interval = _clamp(settings.event_worker_interval_seconds, 5, 300, 15)
    batch_size = _clamp(settings.event_worker_batch_size, 1, 500, 100)
    max_attempts = _clamp(settings.event_worker_max_attempts, 1, 30, 8)

    def _job(db: Session) -> int:
        return deliver_domain_events_once(db, batch_size=batch_size, max_attempts=max_attempts)

    return asyncio.create_task(
        _periodic_loop(
            "Event outbox",
            _job,
            interval_seconds=interval,
            enabled=lambda s: s.enable_event_outbox,
        )
    )


def start_notification_outbox_worker() -> asyncio.Task:
    settings = get_settings()
    interval = _clamp(settings.notification_worker_interval_seconds, 5, 300, 30)
    batch_size = _clamp(settings.notification_worker_batch_size, 1, 200, 50)
    max_attempts = _clamp(settings.notification_worker_max_attempts, 1, 20, 5)

    def _job(db: Session) -> int:
        return process_notification_outbox_once(db, batch_size=batch_size, max_attempts=max_attempts)

    return asyncio.create_task(
        _periodic_loop(
            "Notification outbox",
            _job,
            interval_seconds=interval,
            enabled=lambda s: s.enable_notification_outbox,
        )
    )
