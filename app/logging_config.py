"""
Structured logging configuration.

Called once from create_app() and once from worker.py. Supports text
(human-readable) and JSON formats via the LOG_FORMAT env var; LOG_LEVEL
defaults to INFO.

Pipeline code wraps each stage invocation in run_context(run_id, stage); every
record logged inside it (including from bounded_map worker threads) carries
the run id and stage, so one run can be followed across web and worker logs.
"""
import contextvars
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone

_run_id = contextvars.ContextVar('run_id', default=None)
_stage = contextvars.ContextVar('stage', default=None)


@contextmanager
def run_context(run_id, stage=None):
    """Tag every log record emitted inside the block with run_id / stage."""
    run_token = _run_id.set(run_id)
    stage_token = _stage.set(stage)
    try:
        yield
    finally:
        _stage.reset(stage_token)
        _run_id.reset(run_token)


class RunContextFilter(logging.Filter):
    """Copy the current run context onto the record."""

    def filter(self, record):
        record.run_id = _run_id.get()
        record.stage = _stage.get()
        run = (record.run_id or '')[:8]
        record.run_tag = f"[run={run} stage={record.stage}] " if run else ''
        return True


class JSONFormatter(logging.Formatter):
    """Single-line JSON log formatter for production log aggregators."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if getattr(record, 'run_id', None):
            entry['run_id'] = record.run_id
            entry['stage'] = record.stage
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


# Third-party loggers that are noisy at INFO
_NOISY_LOGGERS = [
    'urllib3',
    'botocore',
    'boto3',
    'anthropic',
    'httpcore',
    'httpx',
    'rq.worker',
]


def configure_logging(app=None):
    """
    Set up root logger with format/level from env vars.

    Environment variables:
        LOG_LEVEL  — Python log level name (default: INFO)
        LOG_FORMAT — "text" (default) or "json"
    """
    level_name = os.getenv('LOG_LEVEL', 'INFO').upper()
    level = getattr(logging, level_name, logging.INFO)

    log_format = os.getenv('LOG_FORMAT', 'text').lower()

    root = logging.getLogger()
    root.setLevel(level)

    # Remove any existing handlers to avoid duplicates on re-init
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(RunContextFilter())

    if log_format == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s %(name)s — %(run_tag)s%(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))

    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if app is not None:
        app.logger.handlers.clear()
        app.logger.propagate = True
