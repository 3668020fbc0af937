"""
Pipeline Stage 3: ANALYZE — scrape each lead's website and score it 1-10.

Runs ANALYZE_CONCURRENCY leads at a time. Each lead is persisted as soon as it
is scored, so a killed invocation loses at most the in-flight leads (which the
retry path resets from `analyzing` to `pending`).

Score < 6 marks the lead as a site-generation candidate.
"""
import logging
import threading
from typing import Dict, Tuple

from app.config import (
    ANALYZE_CONCURRENCY, CRM_STATUS_ANALYZED, CRM_STATUS_CANDIDATE,
    GOOD_SCORE_THRESHOLD, STAGE_LABELS,
)
from app.pipeline.base import StageContext, StageHandler, StageResult, error_message
from app.pipeline.concurrency import bounded_map
from app.services import db, scoring, scraper
from app.services.rate_limit import is_rate_limit_error

logger = logging.getLogger('pipeline.analysis')

# Items a forward analyze pass picks up
ANALYZABLE_STATUSES = ('pending', 'analyzing')

RATE_LIMIT_NOTE = 'Rate limit de IA. Reintentando automáticamente.'


def build_score_details(details: Dict, scraped: Dict) -> Dict:
    """Score breakdown plus the extraction snapshot later stages reuse."""
    return {
        **details,
        'site_type': scraped.get('site_type'),
        'scraped_images': (scraped.get('image_urls') or [])[:8],
        'logo_url': scraped.get('logo_url'),
        'social_links': scraped.get('social_links') or [],
        'visible_text': (scraped.get('visible_text') or '')[:2000],
        'emails': scraped.get('emails') or [],
        'page_title': scraped.get('title') or '',
        'meta_description': scraped.get('description') or '',
        'sub_pages_text': (scraped.get('sub_pages_text') or '')[:6000],
        'sub_pages_count': scraped.get('sub_pages_count') or 0,
    }


class AnalyzeStage(StageHandler):
    stage = 'analyze'
    description = 'Website scrape + Claude quality score'
    apis = ['Website', 'Anthropic']
    concurrency = ANALYZE_CONCURRENCY

    # ── Collaborators ────────────────────────────────────────────────────

    def scrape(self, url: str) -> Dict:
        return scraper.scrape_site(url)

    def score(self, url: str, scraped: Dict) -> Tuple[int, Dict]:
        return scoring.analyze_website(url, scraped)

    # ── Stage ────────────────────────────────────────────────────────────

    def run(self, ctx: StageContext) -> StageResult:
        run = ctx.run
        run.set_stage(STAGE_LABELS[self.stage])

        items = db.list_pipeline_leads(run.id, statuses=ANALYZABLE_STATUSES)
        leads = db.get_leads(item['lead_id'] for item in items)

        lock = threading.Lock()
        state = {'processed': 0, 'failed': 0, 'cancelled': False}

        def _bump(key):
            with lock:
                state[key] += 1

        def _analyze(item):
            if state['cancelled'] or ctx.is_cancelled():
                state['cancelled'] = True
                return

            lead = leads.get(item['lead_id'])
            website = (lead or {}).get('website')
            if not website:
                db.update_pipeline_lead(item['id'], status='error', error='Sin website')
                ctx.report_error('lead_precheck', 'Sin website', lead_id=item['lead_id'],
                                 business_name=item['business_name'], code='missing_website')
                _bump('failed')
                return

            db.update_pipeline_lead(item['id'], status='analyzing', error=None)
            try:
                scraped = self.scrape(website)
                score, details = self.score(website, scraped)
                crm_status = CRM_STATUS_CANDIDATE if score < GOOD_SCORE_THRESHOLD else CRM_STATUS_ANALYZED

                db.update_lead(
                    lead['id'],
                    score=score,
                    score_summary=details.get('summary'),
                    score_details=build_score_details(details, scraped),
                    status=crm_status,
                )
                db.record_activity(
                    lead['id'], 'analyzed',
                    f"Score: {score}/10 · Tipo: {scraped.get('site_type')} · "
                    f"{'Candidato' if crm_status == CRM_STATUS_CANDIDATE else 'Analizado'}",
                )
                db.update_pipeline_lead(item['id'], status='analyzed', score=score)
                run.increment('analyzed')
                _bump('processed')
                logger.info("Run %s: analyzed '%s' score=%d", run.id[:8], item['business_name'], score)
            except Exception as e:
                if is_rate_limit_error(e):
                    db.update_pipeline_lead(item['id'], status='pending', error=RATE_LIMIT_NOTE)
                    ctx.report_error('analyze_lead', error_message(e, 'Rate limit de IA'),
                                     lead_id=item['lead_id'], business_name=item['business_name'],
                                     code='rate_limit', exc=e)
                    raise
                msg = error_message(e, 'Error al analizar')
                db.update_pipeline_lead(item['id'], status='error', error=msg)
                ctx.report_error('analyze_lead', msg, lead_id=item['lead_id'],
                                 business_name=item['business_name'], exc=e)
                _bump('failed')

        bounded_map(items, _analyze, self.concurrency)

        if state['cancelled']:
            return StageResult(processed=state['processed'], failed=state['failed'], cancelled=True)

        logger.info("Run %s: analyze done — %d scored, %d failed",
                    run.id[:8], state['processed'], state['failed'])
        return StageResult(processed=state['processed'], failed=state['failed'])
