"""Asynchronous worker recomputing poll tallies from approved ballots."""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.orm import Session

from duespoll.core.config import get_settings
from duespoll.db.repositories import PollRepository
from duespoll.db.session import SessionLocal
from duespoll.services.tally import ReconciliationReport, reconcile_poll_tally
from duespoll.workers.observability import configure_worker, worker_span

LOGGER = logging.getLogger(__name__)


def run_once(session: Session, *, repair: bool = True) -> list[ReconciliationReport]:
    """Reconcile every poll once and return the reports that found drift."""

    drifted: list[ReconciliationReport] = []
    with worker_span("tally_reconciler.cycle", repair=repair):
        poll_ids = [poll.id for poll in PollRepository(session).list_polls()]
        for poll_id in poll_ids:
            report = reconcile_poll_tally(session, poll_id=poll_id, repair=repair)
            if not report.consistent:
                drifted.append(report)
        LOGGER.info(
            "tally reconciliation cycle complete",
            extra={"polls_checked": len(poll_ids), "polls_drifted": len(drifted)},
        )
    return drifted


async def run() -> None:
    """Continuously reconcile tallies at the configured cadence."""

    settings = get_settings()
    configure_worker("tally-reconciler-worker")
    interval = max(60, settings.reconcile_interval_seconds)
    LOGGER.info("starting tally reconciler", extra={"interval_seconds": interval})
    while True:
        with SessionLocal() as session:
            run_once(session)
        await asyncio.sleep(interval)


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown
        LOGGER.info("tally reconciler stopped")


if __name__ == "__main__":
    main()
