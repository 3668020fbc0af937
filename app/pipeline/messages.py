"""
Pipeline Stage 5: GENERATE MESSAGES — first-contact WhatsApp copy per lead.

A model failure never blocks outreach: anything but a rate limit falls back to
the deterministic template. A rate limit restores the item to where it was and
pauses the run.
"""
import logging
import threading
from typing import Optional

from app.config import MESSAGE_CONCURRENCY, STAGE_LABELS
from app.pipeline.base import StageContext, StageHandler, StageResult, error_message
from app.pipeline.concurrency import bounded_map
from app.services import db, generator
from app.services.rate_limit import is_rate_limit_error

logger = logging.getLogger('pipeline.messages')

MESSAGE_CANDIDATE_STATUSES = ('pending', 'analyzed', 'site_generated', 'generating_message')

RATE_LIMIT_NOTE = 'Rate limit de IA. Reintentando automáticamente.'


class MessagesStage(StageHandler):
    stage = 'generate_messages'
    description = 'Claude WhatsApp message per lead, template fallback'
    apis = ['Anthropic']
    concurrency = MESSAGE_CONCURRENCY

    # ── Collaborators ────────────────────────────────────────────────────

    def generate(self, business_name: str, category: str, address: str,
                 site_url: Optional[str]) -> str:
        return generator.generate_message(business_name, category, address, site_url)

    def fallback(self, business_name: str, site_url: Optional[str]) -> str:
        return generator.build_default_message(business_name, site_url)

    # ── Stage ────────────────────────────────────────────────────────────

    def run(self, ctx: StageContext) -> StageResult:
        run = ctx.run
        run.set_stage(STAGE_LABELS[self.stage])

        items = [
            item for item in db.list_pipeline_leads(run.id, statuses=MESSAGE_CANDIDATE_STATUSES)
            if item.get('phone')
        ]

        lock = threading.Lock()
        state = {'processed': 0, 'failed': 0, 'cancelled': False}

        def _bump(key):
            with lock:
                state[key] += 1

        def _compose(item):
            if state['cancelled'] or ctx.is_cancelled():
                state['cancelled'] = True
                return

            # generating_message is an orphan from a killed invocation
            previous = 'site_generated' if item['status'] == 'generating_message' else item['status']
            db.update_pipeline_lead(item['id'], status='generating_message', error=None)

            try:
                lead = db.get_lead(item['lead_id']) if item['lead_id'] is not None else None
                if lead is None:
                    db.update_pipeline_lead(item['id'], status='error', error='Lead no encontrado')
                    ctx.report_error('fetch_lead', 'Lead no encontrado', lead_id=item['lead_id'],
                                     business_name=item['business_name'], code='lead_not_found')
                    _bump('failed')
                    return

                site_url = lead.get('generated_site_url') or item.get('site_url')
                try:
                    message = self.generate(
                        lead['business_name'],
                        lead.get('category') or lead.get('niche') or '',
                        lead.get('address') or '',
                        site_url,
                    )
                except Exception as e:
                    if is_rate_limit_error(e):
                        raise
                    logger.warning("Message generation failed for '%s', using template: %s",
                                   item['business_name'], e)
                    message = self.fallback(lead['business_name'], site_url)

                db.update_pipeline_lead(item['id'], status='message_ready', message=message)
                _bump('processed')
            except Exception as e:
                if is_rate_limit_error(e):
                    db.update_pipeline_lead(item['id'], status=previous, error=RATE_LIMIT_NOTE)
                    ctx.report_error('generate_message', error_message(e, 'Rate limit de IA'),
                                     lead_id=item['lead_id'], business_name=item['business_name'],
                                     code='rate_limit', exc=e)
                    raise
                msg = error_message(e, 'Error generando mensaje')
                db.update_pipeline_lead(item['id'], status='error', error=msg)
                ctx.report_error('generate_message', msg, lead_id=item['lead_id'],
                                 business_name=item['business_name'], exc=e)
                _bump('failed')

        bounded_map(items, _compose, self.concurrency)

        if state['cancelled']:
            return StageResult(processed=state['processed'], failed=state['failed'], cancelled=True)

        logger.info("Run %s: %d messages ready, %d failed", run.id[:8], state['processed'], state['failed'])
        return StageResult(processed=state['processed'], failed=state['failed'])
