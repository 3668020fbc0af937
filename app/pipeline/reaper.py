"""
Stale-run reaper.

A running run whose row has not been touched for STALE_RUN_MINUTES lost its
invocation (killed worker, dropped continuation). Called on every run-list
access; marks such runs failed so the user can retry them.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List

from app.config import STALE_RUN_MINUTES
from app.models.run import Run

logger = logging.getLogger('pipeline.reaper')


def reap_stale_runs(now: datetime = None) -> List[str]:
    """Fail every running run idle for longer than STALE_RUN_MINUTES. Returns their ids."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=STALE_RUN_MINUTES)

    reaped = []
    for run in Run.list_running_before(cutoff):
        stage = run.stage or 'unknown'
        if not run.fail():
            continue
        run.append_error(
            stage=stage,
            step='stale_timeout',
            message=f"Sin progreso durante más de {STALE_RUN_MINUTES} minutos",
            code='stale',
        )
        logger.warning("Run %s reaped — no progress since %s", run.id[:8], run.updated_at)
        reaped.append(run.id)
    return reaped
