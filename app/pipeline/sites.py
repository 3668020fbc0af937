"""
Pipeline Stage 4: GENERATE SITES — a new landing page for every weak website.

Site generation is the slowest model call in the pipeline, so the stage works
in batches of SITE_BATCH_SIZE leads per invocation and asks the dispatcher to
re-schedule it while a backlog remains. Leads scoring >= 6 already have a good
site and are skipped.
"""
import logging
import threading
from typing import Dict, Optional

from app.config import (
    APP_URL, CRM_STATUS_SITE_GENERATED, GOOD_SCORE_THRESHOLD, SITE_BATCH_SIZE,
    SITE_CONCURRENCY, STAGE_LABELS,
)
from app.pipeline.base import StageContext, StageHandler, StageResult, error_message
from app.pipeline.concurrency import bounded_map
from app.services import db, generator, places, r2
from app.services.rate_limit import is_rate_limit_error

logger = logging.getLogger('pipeline.sites')

# Items still waiting for a site
SITE_CANDIDATE_STATUSES = ('pending', 'analyzed')

RATE_LIMIT_NOTE = 'Rate limit de IA. Reintentando automáticamente.'


def site_slug(business_name: str, lead_id) -> str:
    return f"{generator.slugify(business_name)}-{lead_id}"


def preview_url(slug: str) -> str:
    return f"{APP_URL}/preview/{slug}"


def build_site_info(lead: Dict, place_details: Optional[Dict] = None) -> Dict:
    """
    Generator input from the canonical lead and its stored extraction snapshot.

    Place details, when available, override the stored rating and hours.
    """
    details = lead.get('score_details') or {}
    logo_url = details.get('logo_url')
    images = generator.filter_site_images(details.get('scraped_images') or [], logo_url)

    scraped = None
    if details.get('visible_text'):
        scraped = {
            'visible_text': details['visible_text'],
            'social_links': details.get('social_links') or [],
            'site_type': details.get('site_type'),
            'emails': details.get('emails') or [],
            'title': details.get('page_title') or '',
            'description': details.get('meta_description') or '',
            'sub_pages_text': details.get('sub_pages_text') or '',
            'sub_pages_count': details.get('sub_pages_count') or 0,
        }

    image_urls = []
    if lead.get('photo_url'):
        image_urls.append(lead['photo_url'])
    for url in images:
        if url not in image_urls:
            image_urls.append(url)

    place_details = place_details or {}
    return {
        'business_name': lead.get('business_name') or '',
        'category': lead.get('category') or lead.get('niche') or '',
        'address': lead.get('address') or '',
        'phone': lead.get('phone') or '',
        'scraped': scraped,
        'image_urls': image_urls,
        'logo_url': logo_url,
        'rating': place_details.get('rating') or lead.get('rating'),
        'review_count': place_details.get('user_rating_count'),
        'opening_hours': place_details.get('opening_hours') or details.get('opening_hours'),
    }


class SitesStage(StageHandler):
    stage = 'generate_sites'
    description = 'Claude landing-page generation for low-scoring leads'
    apis = ['Anthropic', 'Google Places', 'Cloudflare R2']
    concurrency = SITE_CONCURRENCY

    # ── Collaborators ────────────────────────────────────────────────────

    def place_details(self, place_id: str) -> Dict:
        return places.fetch_place_details(place_id)

    def generate_html(self, info: Dict) -> str:
        return generator.generate_site_html(info)

    def upload(self, slug: str, html: str) -> Optional[str]:
        return r2.upload_site_html(slug, html)

    # ── Stage ────────────────────────────────────────────────────────────

    def run(self, ctx: StageContext) -> StageResult:
        run = ctx.run
        run.set_stage(STAGE_LABELS[self.stage])

        orphaned = db.reset_pipeline_lead_status(run.id, 'generating_site', 'analyzed')
        if orphaned:
            logger.info("Run %s: reset %d orphaned generating_site items", run.id[:8], orphaned)

        items = db.list_pipeline_leads(run.id, statuses=SITE_CANDIDATE_STATUSES)
        todo = []
        skipped = 0
        for item in items:
            if item.get('score') is not None and item['score'] >= GOOD_SCORE_THRESHOLD:
                db.update_pipeline_lead(item['id'], status='skipped')
                skipped += 1
            else:
                todo.append(item)

        batch = todo[:SITE_BATCH_SIZE]
        backlog = len(todo) - len(batch)

        lock = threading.Lock()
        state = {'processed': 0, 'failed': 0, 'cancelled': False}

        def _bump(key):
            with lock:
                state[key] += 1

        def _generate(item):
            if state['cancelled'] or ctx.is_cancelled():
                state['cancelled'] = True
                return

            db.update_pipeline_lead(item['id'], status='generating_site', error=None)
            ctx.heartbeat()

            try:
                lead = db.get_lead(item['lead_id']) if item['lead_id'] is not None else None
                if lead is None:
                    db.update_pipeline_lead(item['id'], status='error', error='Lead no encontrado')
                    ctx.report_error('fetch_lead', 'Lead no encontrado', lead_id=item['lead_id'],
                                     business_name=item['business_name'], code='lead_not_found')
                    _bump('failed')
                    return

                info = build_site_info(lead, self.place_details(lead.get('place_id')))
                html = self.generate_html(info)
                slug = site_slug(lead['business_name'], lead['id'])
                url = preview_url(slug)

                score_details = {
                    k: v for k, v in (lead.get('score_details') or {}).items()
                    if k not in ('site_html', 'site_slug', 'site_public_url')
                }
                score_details['site_html'] = html
                score_details['site_slug'] = slug
                if info.get('opening_hours'):
                    score_details['opening_hours'] = info['opening_hours']
                public_url = self.upload(slug, html)
                if public_url:
                    score_details['site_public_url'] = public_url

                db.update_lead(
                    lead['id'],
                    generated_site_url=url,
                    status=CRM_STATUS_SITE_GENERATED,
                    score_details=score_details,
                )
                db.record_activity(lead['id'], 'site_generated', f"Sitio generado: {url}")
                db.update_pipeline_lead(item['id'], status='site_generated', site_url=url)
                run.increment('sites_generated')
                _bump('processed')
                logger.info("Run %s: site generated for '%s' → %s", run.id[:8], item['business_name'], url)
            except Exception as e:
                if is_rate_limit_error(e):
                    db.update_pipeline_lead(item['id'], status=item['status'], error=RATE_LIMIT_NOTE)
                    ctx.report_error('generate_site', error_message(e, 'Rate limit de IA'),
                                     lead_id=item['lead_id'], business_name=item['business_name'],
                                     code='rate_limit', exc=e)
                    raise
                msg = error_message(e, 'Error generando sitio')
                db.update_pipeline_lead(item['id'], status='error', error=msg)
                ctx.report_error('generate_site', msg, lead_id=item['lead_id'],
                                 business_name=item['business_name'], exc=e)
                _bump('failed')

        bounded_map(batch, _generate, self.concurrency)

        result = StageResult(processed=state['processed'], failed=state['failed'], skipped=skipped)
        if state['cancelled']:
            result.cancelled = True
            return result

        if backlog:
            logger.info("Run %s: %d sites still pending — re-scheduling", run.id[:8], backlog)
            result.reschedule = True
            result.meta['backlog'] = backlog
        return result
