"""
Continuation channels — how the next (or the same) stage gets scheduled.

A stage never calls the following stage directly. It hands (run_id, stage) to
a channel and returns, so no single invocation has to outlive the
platform's wall-clock limit:

  rq      enqueue process_stage on the RQ queue (default; worker.py runs it)
  local   submit to an in-process thread pool
  http    POST to our own /api/pipeline/run/continue-{a|b} endpoint,
          alternating a/b so the platform does not see a self-call loop
  inline  run the stage synchronously (tests, scripts)

The http channel retries 3 times; if the platform still reports a loop
(508 / INFINITE_LOOP_DETECTED) it runs the stage in-process instead.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor

import requests

from app.config import (
    APP_URL, CONTINUATION_ATTEMPTS, CONTINUATION_BACKEND, CONTINUATION_LOOP_MARKER,
    CONTINUATION_LOOP_STATUS, CONTINUATION_RETRY_DELAYS, JOB_TIMEOUT,
    PIPELINE_INTERNAL_TOKEN,
)

logger = logging.getLogger('pipeline.continuation')


class ContinuationError(Exception):
    """The next stage could not be handed off; the current stage fails."""


def _process_stage(run_id: str, stage: str, phase: str = 'init'):
    from app.pipeline.manager import process_stage
    process_stage(run_id, stage, phase)


def next_phase(from_phase: str) -> str:
    return 'b' if from_phase == 'a' else 'a'


# ── Lazy RQ queue (avoids import-time Redis connection in tests) ──────────

_queue = None

def _get_queue():
    global _queue
    if _queue is None:
        from app.extensions import rq_connection
        from rq import Queue
        _queue = Queue(connection=rq_connection)
    return _queue


class ContinuationChannel:
    name = ''

    def schedule(self, run_id: str, stage: str, from_phase: str = 'init'):
        raise NotImplementedError


class RQChannel(ContinuationChannel):
    name = 'rq'

    def schedule(self, run_id, stage, from_phase='init'):
        from app.pipeline.manager import process_stage
        phase = next_phase(from_phase)
        try:
            job = _get_queue().enqueue(process_stage, run_id, stage, phase, job_timeout=JOB_TIMEOUT)
        except Exception as e:
            raise ContinuationError(f"Could not enqueue stage '{stage}': {e}") from e
        logger.info("Run %s: enqueued '%s' (job %s)", run_id[:8], stage, job.id)


_executor = None

def _get_executor():
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix='pipeline')
    return _executor


def run_in_background(run_id: str, stage: str, phase: str):
    """Run a stage on the in-process pool and return immediately."""
    return _get_executor().submit(_process_stage, run_id, stage, phase)


class LocalChannel(ContinuationChannel):
    name = 'local'

    def schedule(self, run_id, stage, from_phase='init'):
        run_in_background(run_id, stage, next_phase(from_phase))
        logger.info("Run %s: '%s' submitted to local pool", run_id[:8], stage)


class InlineChannel(ContinuationChannel):
    name = 'inline'

    def schedule(self, run_id, stage, from_phase='init'):
        _process_stage(run_id, stage, next_phase(from_phase))


class HttpChannel(ContinuationChannel):
    name = 'http'

    def __init__(self, base_url: str = None, sleep=time.sleep):
        self.base_url = (base_url or APP_URL).rstrip('/')
        self.sleep = sleep

    def _headers(self):
        headers = {'Content-Type': 'application/json'}
        if PIPELINE_INTERNAL_TOKEN:
            headers['X-Pipeline-Token'] = PIPELINE_INTERNAL_TOKEN
        return headers

    def schedule(self, run_id, stage, from_phase='init'):
        phase = next_phase(from_phase)
        url = f"{self.base_url}/api/pipeline/run/continue-{phase}"
        last_status = None
        last_snippet = ''
        loop_detected = False

        for attempt in range(CONTINUATION_ATTEMPTS):
            try:
                resp = requests.post(url, json={'runId': run_id, 'stage': stage},
                                     headers=self._headers(), timeout=30)
                if resp.ok:
                    return
                body = resp.text or ''
                last_status = resp.status_code
                last_snippet = body[:240]
                loop_detected = (
                    resp.status_code == CONTINUATION_LOOP_STATUS
                    or CONTINUATION_LOOP_MARKER in body.upper()
                )
                logger.error("Trigger '%s' attempt %d failed: %s %s",
                             stage, attempt + 1, resp.status_code, last_snippet)
                if loop_detected:
                    break
            except requests.RequestException as e:
                logger.error("Trigger '%s' attempt %d error: %s", stage, attempt + 1, e)

            if attempt < CONTINUATION_ATTEMPTS - 1:
                self.sleep(CONTINUATION_RETRY_DELAYS[min(attempt, len(CONTINUATION_RETRY_DELAYS) - 1)])

        if loop_detected:
            logger.warning("Loop detected while triggering '%s' — continuing in-process", stage)
            _process_stage(run_id, stage, phase)
            return

        detail = f" (last status {last_status})" if last_status else ''
        if last_snippet:
            detail += f": {last_snippet}"
        raise ContinuationError(
            f"Failed to trigger stage '{stage}' after {CONTINUATION_ATTEMPTS} attempts{detail}"
        )


CHANNELS = {
    'rq': RQChannel,
    'local': LocalChannel,
    'http': HttpChannel,
    'inline': InlineChannel,
}


def get_channel(name: str = None) -> ContinuationChannel:
    name = name or CONTINUATION_BACKEND
    channel_cls = CHANNELS.get(name)
    if not channel_cls:
        raise ValueError(f"Unknown continuation backend '{name}'. Available: {list(CHANNELS)}")
    return channel_cls()
