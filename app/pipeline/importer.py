"""
Pipeline Stage 2: IMPORT — cached search snapshot → canonical leads + run items.

Idempotent: re-running the stage for the same run neither duplicates canonical
leads (insert-or-ignore on place_id) nor pipeline leads (one per lead per run).
"""
import logging

from app.config import STAGE_LABELS
from app.pipeline.base import StageContext, StageHandler, StageResult
from app.services import db

logger = logging.getLogger('pipeline.importer')


class ImportStage(StageHandler):
    stage = 'import'
    description = 'Upsert viable candidates into leads and create run items'
    apis = []
    concurrency = 1

    def run(self, ctx: StageContext) -> StageResult:
        run = ctx.run
        run.set_stage(STAGE_LABELS[self.stage])

        snapshot = run.search_results or []
        if not snapshot:
            logger.info("Run %s: no cached search results — completing", run.id[:8])
            run.complete()
            return StageResult(run_finished=True)

        leads = db.upsert_leads(snapshot, run.niche, run.city)
        created = db.create_pipeline_leads(run.id, leads)
        total = db.count_pipeline_leads(run.id)
        run.set_counters(total_leads=total)

        logger.info("Run %s: imported %d leads (%d new items, %d total)",
                    run.id[:8], len(leads), created, total)

        if ctx.is_cancelled():
            return StageResult(cancelled=True)

        return StageResult(processed=len(leads), skipped=len(leads) - created)
