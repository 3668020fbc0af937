"""
Pipeline stage contracts.

Every stage handler implements StageHandler.run() and returns a StageResult.
Collaborator calls (search provider, scraper, model, WhatsApp gateway) are
methods on the handler so the mock handlers can override just those; the
pipeline manager only sees the uniform interface.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Type

from app.models.run import Run

logger = logging.getLogger('pipeline.base')


@dataclass
class StageResult:
    """Uniform output from every pipeline stage."""
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    # more work of this same stage is left → dispatcher re-schedules it
    reschedule: bool = False
    # the stage itself finished the run (e.g. search found nothing)
    run_finished: bool = False
    # cancellation observed at a checkpoint; the dispatcher does nothing more
    cancelled: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)


class StageContext:
    """
    Per-invocation helpers bound to one run and one stage.

    Every error reported here lands in the run's error log and in the
    `pipeline.<stage>` logger with the same context.
    """

    def __init__(self, run: Run, stage: str):
        self.run = run
        self.stage = stage
        self.logger = logging.getLogger(f'pipeline.{stage}')

    @property
    def config(self) -> Dict:
        return self.run.config or {}

    def is_cancelled(self) -> bool:
        return self.run.is_cancelled()

    def heartbeat(self):
        self.run.touch()

    def report_error(
        self,
        step: str,
        error: str,
        lead_id=None,
        business_name: str = None,
        code: str = None,
        exc: BaseException = None,
    ):
        self.logger.error(
            "run=%s stage=%s step=%s lead=%s code=%s error=%s",
            self.run.id[:8], self.stage, step, lead_id, code, error,
            exc_info=exc if code != 'rate_limit' else None,
        )
        return self.run.append_error(
            stage=self.stage,
            step=step,
            message=error,
            lead_id=lead_id,
            business_name=business_name,
            code=code,
        )


def error_message(exc: BaseException, fallback: str) -> str:
    text = str(exc).strip()
    return text or fallback


class StageHandler(ABC):
    """
    Base class for all pipeline stage handlers.

    A handler receives the run context, does its share of work with
    incremental persistence, checks cancellation at its checkpoints, and
    returns a StageResult telling the dispatcher what to do next.
    """
    stage: str = ''

    # Metadata — exposed by GET /api/pipeline/stages
    description: str = ''
    apis: List[str] = []
    concurrency: int = 1

    @abstractmethod
    def run(self, ctx: StageContext) -> StageResult:
        ...


def get_handler(registry: Dict[str, Type[StageHandler]], stage: str) -> StageHandler:
    """Look up and instantiate the handler for a stage."""
    handler_cls = registry.get(stage)
    if not handler_cls:
        raise ValueError(f"No handler registered for stage '{stage}'")
    return handler_cls()


def get_pipeline_info(registry: Dict[str, Type[StageHandler]]) -> List[Dict[str, Any]]:
    """Serialize the stage registry, in registry order, into JSON-friendly dicts."""
    return [
        {
            'stage': stage,
            'description': cls.description or '',
            'apis': cls.apis if isinstance(cls.apis, list) else [],
            'concurrency': cls.concurrency,
        }
        for stage, cls in registry.items()
    ]
