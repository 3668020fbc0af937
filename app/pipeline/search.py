"""
Pipeline Stage 1: SEARCH — Google Places discovery + franchise pre-filter.

Fetches up to 2×max_results candidates (capped at MAX_SEARCH_FETCH), drops
place ids already in the leads table, asks the model whether each new one is
an independent business, and caches the first max_results viable candidates
on the run for the import stage. No candidates → the run completes here.
"""
import logging
from typing import Dict, List

from app.config import DEFAULT_MAX_RESULTS, FILTER_CONCURRENCY, MAX_SEARCH_FETCH, STAGE_LABELS
from app.pipeline.base import StageContext, StageHandler, StageResult
from app.pipeline.concurrency import bounded_map
from app.services import db, places, scoring

logger = logging.getLogger('pipeline.search')


def fetch_count(max_results: int) -> int:
    return min(2 * max_results, MAX_SEARCH_FETCH)


class SearchStage(StageHandler):
    stage = 'search'
    description = 'Google Places text search + franchise filter'
    apis = ['Google Places', 'Anthropic']
    concurrency = FILTER_CONCURRENCY

    # ── Collaborators ────────────────────────────────────────────────────

    def search_places(self, niche: str, city: str, limit: int) -> List[Dict]:
        return places.search_places(niche, city, limit)

    def classify(self, candidate: Dict) -> Dict:
        return scoring.quick_lead_filter(
            candidate.get('business_name', ''),
            candidate.get('website', ''),
            candidate.get('category', ''),
        )

    # ── Stage ────────────────────────────────────────────────────────────

    def run(self, ctx: StageContext) -> StageResult:
        run = ctx.run
        run.set_stage(STAGE_LABELS[self.stage])
        max_results = int(ctx.config.get('max_results') or DEFAULT_MAX_RESULTS)

        candidates = self.search_places(run.niche, run.city, fetch_count(max_results))
        if not candidates:
            logger.info("Run %s: search returned nothing — completing", run.id[:8])
            run.complete()
            return StageResult(run_finished=True)

        known = db.known_place_ids(c['place_id'] for c in candidates)
        fresh = [c for c in candidates if c['place_id'] not in known]

        viability: Dict[str, bool] = {}

        def _classify(candidate):
            try:
                verdict = self.classify(candidate)
                viability[candidate['place_id']] = verdict.get('viable') is not False
            except Exception as e:
                # an unclassifiable candidate stays in
                logger.warning("Filter failed for %s: %s", candidate.get('business_name'), e)
                viability[candidate['place_id']] = True

        bounded_map(fresh, _classify, self.concurrency)

        viable = [c for c in fresh if viability.get(c['place_id'], True)][:max_results]
        logger.info(
            "Run %s: %d candidates, %d already known, %d viable",
            run.id[:8], len(candidates), len(known), len(viable),
        )

        if not viable:
            run.complete()
            return StageResult(processed=len(fresh), skipped=len(known), run_finished=True)

        if ctx.is_cancelled():
            return StageResult(cancelled=True)

        run.cache_search_results(viable)
        return StageResult(
            processed=len(fresh),
            skipped=len(known) + len(fresh) - len(viable),
            meta={'viable': len(viable)},
        )
