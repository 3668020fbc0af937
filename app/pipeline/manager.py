"""
Pipeline Manager — run orchestration using the stage handler registry.

Moves a Run through the 6 pipeline stages:
  SEARCH → IMPORT → ANALYZE → GENERATE SITES → GENERATE MESSAGES → SEND

Each invocation of process_stage() runs exactly one stage (or one batch of a
batched stage) and then hands the next unit of work to a continuation
channel, so no single job has to survive the whole pipeline. All state
between invocations lives in the pipeline_runs / pipeline_leads rows.
"""
import logging
import time
from typing import Dict, List, Optional, Type

from app.config import (
    DEFAULT_MAX_RESULTS, MAX_SEARCH_FETCH, PIPELINE_STAGES, STAGE_DONE, STAGE_SKIP_FLAGS,
)
from app.logging_config import run_context
from app.models.run import Run, RunStateError
from app.pipeline import continuation
from app.pipeline.base import StageContext, StageHandler, error_message, get_handler
from app.pipeline.reaper import reap_stale_runs
from app.services import db
from app.services.rate_limit import is_rate_limit_error

logger = logging.getLogger('pipeline.manager')

# Import handlers from each stage module
from app.pipeline.search import SearchStage
from app.pipeline.importer import ImportStage
from app.pipeline.analysis import AnalyzeStage
from app.pipeline.sites import SitesStage
from app.pipeline.messages import MessagesStage
from app.pipeline.send import SendStage


# ── Stage registry ────────────────────────────────────────────────────────────
# Maps stage name → handler class

import os
if os.getenv('MOCK_PIPELINE'):
    from app.pipeline.mock_adapters import MOCK_STAGE_REGISTRY
    STAGE_REGISTRY = MOCK_STAGE_REGISTRY
    logger.info("MOCK_PIPELINE active — using fake collaborators")
else:
    STAGE_REGISTRY: Dict[str, Type[StageHandler]] = {
        'search':            SearchStage,
        'import':            ImportStage,
        'analyze':           AnalyzeStage,
        'generate_sites':    SitesStage,
        'generate_messages': MessagesStage,
        'send':              SendStage,
    }


# ── Stage order ───────────────────────────────────────────────────────────────

def active_stages(config: Dict) -> List[str]:
    """Stage order with the stages disabled by config removed."""
    config = config or {}
    return [
        s for s in PIPELINE_STAGES
        if not (s in STAGE_SKIP_FLAGS and config.get(STAGE_SKIP_FLAGS[s]))
    ]


def next_stage(current: str, config: Dict) -> Optional[str]:
    """First enabled stage after `current`, or None when the run is done."""
    if current not in PIPELINE_STAGES:
        return None
    later = PIPELINE_STAGES[PIPELINE_STAGES.index(current) + 1:]
    enabled = active_stages(config)
    return next((s for s in later if s in enabled), None)


def normalize_config(payload: Dict) -> Dict:
    """
    Run config from a request body.

    Accepts snake_case keys (and the camelCase ones older clients send).
    max_results is clamped to 1..MAX_SEARCH_FETCH.
    """
    payload = payload or {}

    def _get(snake, camel, default=None):
        if snake in payload:
            return payload[snake]
        return payload.get(camel, default)

    raw_max = _get('max_results', 'maxResults') or DEFAULT_MAX_RESULTS
    try:
        max_results = int(raw_max)
    except (TypeError, ValueError):
        raise ValueError(f"max_results must be an integer, got {raw_max!r}")

    config = {
        'max_results': min(max(1, max_results), MAX_SEARCH_FETCH),
        'skip_analysis': bool(_get('skip_analysis', 'skipAnalysis', False)),
        'skip_site_generation': bool(_get('skip_site_generation', 'skipSiteGeneration', False)),
        'skip_messages': bool(_get('skip_messages', 'skipMessages', False)),
        'skip_sending': bool(_get('skip_sending', 'skipSending', False)),
    }
    account = _get('whatsapp_account_id', 'whatsappAccountId')
    if account:
        config['whatsapp_account_id'] = str(account)
    return config


# ── Public API ────────────────────────────────────────────────────────────────

def launch_run(niche: str, city: str, config: Dict = None) -> Run:
    """
    Create a new Run and hand its first stage to the continuation channel.
    """
    niche = (niche or '').strip()
    city = (city or '').strip()
    if not niche or not city:
        raise ValueError("niche and city are required")

    run = Run(niche=niche, city=city, config=normalize_config(config)).insert()
    logger.info("Run %s created for '%s' in %s (config=%s)", run.id[:8], niche, city, run.config)

    continuation.get_channel().schedule(run.id, 'search', 'init')
    return run


def get_run_status(run_id: str) -> Optional[dict]:
    """Get the current status of a run, with per-status item counts."""
    run = Run.load(run_id)
    if not run:
        return None
    data = run.to_dict()
    data['lead_counts'] = db.status_counts(run_id)
    return data


def get_run_leads(run_id: str) -> List[Dict]:
    if Run.load(run_id) is None:
        raise LookupError(f"Run {run_id} not found")
    return db.list_pipeline_leads(run_id)


def list_runs(limit: int = 20) -> List[Dict]:
    """Recent runs, newest first. Reaps stale runs before reading."""
    reaped = reap_stale_runs()
    if reaped:
        logger.info("Reaped %d stale runs", len(reaped))
    return [run.to_dict() for run in Run.list_recent(limit)]


def cancel_run(run_id: str) -> Dict:
    run = Run.load(run_id)
    if not run:
        raise LookupError(f"Run {run_id} not found")
    run.cancel()
    logger.info("Run %s cancelled", run_id[:8])
    return run.to_dict()


# ── Stage dispatcher (enqueued via the continuation channel) ─────────────────

def _safe_append(run: Run, stage: str, step: str, message: str, code: str):
    """Error-log write from the dispatcher's own error path; a failure here is only logged."""
    try:
        run.append_error(stage=stage, step=step, message=message, code=code)
    except Exception:
        logger.exception("Run %s: could not record %s", run.id[:8], step)


def process_stage(run_id: str, stage: str, phase: str = 'init'):
    """
    Execute one stage of a run. Never raises.

    1. Load the run; nothing happens if it is missing or no longer running.
    2. Look up the handler; an unknown stage is logged on the run (invalid_stage).
    3. Run it, then re-schedule (batched stages), advance, or stop.

    Any exception out of the stage: a rate limit leaves the run running with a
    rate_limit_pause entry; anything else fails the run (stage_fatal).
    """
    with run_context(run_id, stage):
        _dispatch(run_id, stage, phase)


def _dispatch(run_id: str, stage: str, phase: str):
    run = Run.load(run_id)
    if not run:
        logger.error("Run %s not found", run_id)
        return
    if run.status != 'running':
        logger.info("Run %s is %s — skipping stage '%s'", run_id[:8], run.status, stage)
        return

    try:
        handler = get_handler(STAGE_REGISTRY, stage)
    except ValueError as e:
        logger.error("Run %s: %s", run_id[:8], e)
        _safe_append(run, stage, 'unknown_stage', f"Unknown stage: {stage}", 'invalid_stage')
        return

    t0 = time.monotonic()
    logger.info("Run %s: stage '%s' START (phase=%s)", run_id[:8], stage, phase)
    try:
        result = handler.run(StageContext(run, stage))
        elapsed = time.monotonic() - t0
        logger.info("Run %s: stage '%s' END in %.1fs (processed=%d, failed=%d, skipped=%d)",
                    run_id[:8], stage, elapsed, result.processed, result.failed, result.skipped)

        if result.cancelled or result.run_finished:
            return
        if result.reschedule:
            continuation.get_channel().schedule(run_id, stage, phase)
            return
        advance_or_complete(run, stage, phase)

    except Exception as e:
        msg = error_message(e, 'Error desconocido')
        elapsed = time.monotonic() - t0
        if is_rate_limit_error(e):
            logger.warning("Run %s: stage '%s' RATE_LIMIT after %.1fs — run paused",
                           run_id[:8], stage, elapsed)
            _safe_append(run, stage, 'rate_limit_pause', msg, 'rate_limit')
            return

        logger.exception("Run %s: stage '%s' FATAL after %.1fs: %s", run_id[:8], stage, elapsed, msg)
        _safe_append(run, stage, 'stage_fatal', msg, 'fatal')
        try:
            run.fail()
        except Exception:
            logger.exception("Run %s: could not mark failed", run_id[:8])


def advance_or_complete(run: Run, current: str, phase: str = 'init'):
    """Schedule the next enabled stage, or complete the run when none is left."""
    nxt = next_stage(current, run.config)
    if nxt:
        continuation.get_channel().schedule(run.id, nxt, phase)
        return
    if run.complete():
        logger.info("Run %s completed — leads=%d analyzed=%d sites=%d sent=%d",
                    run.id[:8], run.total_leads, run.analyzed, run.sites_generated, run.messages_sent)


# ── Retry / resume ───────────────────────────────────────────────────────────

def _is_rate_limit_paused(run: Run) -> bool:
    return (
        run.status == 'running'
        and bool(run.errors)
        and run.errors[-1].get('step') == 'rate_limit_pause'
    )


def resume_stage(run: Run, statuses) -> Optional[str]:
    """
    Where a retried run picks up, given the item statuses after the reset.

    None means nothing is left to do.
    """
    config = run.config or {}
    if run.search_results is None:
        return 'search'
    if not statuses:
        return 'import'
    statuses = set(statuses)
    if 'pending' in statuses and not config.get('skip_analysis'):
        return 'analyze'
    if 'analyzed' in statuses and not config.get('skip_site_generation'):
        return 'generate_sites'
    if 'site_generated' in statuses and not config.get('skip_messages'):
        return 'generate_messages'
    if 'message_ready' in statuses and not config.get('skip_sending'):
        return 'send'
    return None


def retry_run(run_id: str) -> Dict:
    """
    Resume a failed or cancelled run (or one paused on a rate limit).

    In-flight and errored items roll back to their last completed state; the
    run restarts at the earliest stage that still has work.
    Returns {'id', 'stage'} where stage is the resumed stage or 'done'.
    """
    run = Run.load(run_id)
    if not run:
        raise LookupError(f"Run {run_id} not found")
    if run.status not in ('failed', 'cancelled') and not _is_rate_limit_paused(run):
        raise RunStateError(f"Cannot retry a run with status '{run.status}'")

    reset = db.reset_items_for_retry(run_id)
    counts = db.status_counts(run_id)
    stage = resume_stage(run, [s for s, n in counts.items() if n])
    logger.info("Run %s: retry — %d items reset, resuming at %s", run_id[:8], reset, stage or STAGE_DONE)

    run.resume(stage or STAGE_DONE)
    if stage is None:
        run.complete()
        return {'id': run_id, 'stage': STAGE_DONE}

    continuation.get_channel().schedule(run_id, stage, 'init')
    return {'id': run_id, 'stage': stage}
