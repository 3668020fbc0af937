"""
Pipeline Stage 6: SEND — deliver ready messages over one WhatsApp session.

Messages go out one at a time with SEND_DELAY_SECONDS between them (anti-ban
pacing). A failed send marks only that item; a session that cannot be opened
or never becomes ready fails every item that has not been sent yet. The
session is always closed, including on cancellation.
"""
import logging
import time
from typing import Optional

from app.config import SEND_DELAY_SECONDS, STAGE_LABELS, WHATSAPP_READY_TIMEOUT
from app.pipeline.base import StageContext, StageHandler, StageResult, error_message
from app.services import db, whatsapp

logger = logging.getLogger('pipeline.send')


class SendStage(StageHandler):
    stage = 'send'
    description = 'WhatsApp delivery with anti-ban pacing'
    apis = ['WhatsApp gateway']
    concurrency = 1

    send_delay = SEND_DELAY_SECONDS
    ready_timeout = WHATSAPP_READY_TIMEOUT

    # ── Collaborators ────────────────────────────────────────────────────

    def open_session(self, account_id: Optional[str]):
        return whatsapp.open_session(account_id)

    def wait_ready(self, session):
        whatsapp.wait_ready(session, timeout=self.ready_timeout)

    def send_text(self, session, phone: str, text: str):
        return whatsapp.send_text(session, phone, text)

    def close_session(self, session):
        whatsapp.close_session(session)

    def pause(self):
        time.sleep(self.send_delay)

    # ── Stage ────────────────────────────────────────────────────────────

    def run(self, ctx: StageContext) -> StageResult:
        run = ctx.run
        run.set_stage(STAGE_LABELS[self.stage])

        to_send = [
            item for item in db.list_pipeline_leads(run.id, statuses=('message_ready',))
            if item.get('phone') and item.get('message')
        ]
        if not to_send:
            logger.info("Run %s: nothing to send", run.id[:8])
            return StageResult()

        sent = 0
        failed = 0
        finished = set()
        session = None
        try:
            session = self.open_session(ctx.config.get('whatsapp_account_id'))
            self.wait_ready(session)

            for i, item in enumerate(to_send):
                if ctx.is_cancelled():
                    return StageResult(processed=sent, failed=failed, cancelled=True)

                db.update_pipeline_lead(item['id'], status='sending')
                try:
                    self.send_text(session, item['phone'], item['message'])
                    db.record_message(item['lead_id'], item['message'], template_used='autopilot')
                    db.mark_lead_contacted(item['lead_id'])
                    db.record_activity(item['lead_id'], 'contacted',
                                       'Mensaje enviado por WhatsApp (autopilot)')
                    db.update_pipeline_lead(item['id'], status='sent')
                    run.increment('messages_sent')
                    sent += 1
                    logger.info("Run %s: sent to '%s'", run.id[:8], item['business_name'])
                except Exception as e:
                    msg = error_message(e, 'Error al enviar')
                    db.update_pipeline_lead(item['id'], status='error', error=msg)
                    ctx.report_error('send_message', msg, lead_id=item['lead_id'],
                                     business_name=item['business_name'], exc=e)
                    failed += 1
                finished.add(item['id'])

                if i < len(to_send) - 1:
                    self.pause()
        except Exception as e:
            msg = error_message(e, 'Error de conexión WhatsApp')
            ctx.report_error('whatsapp_connection', msg, code='whatsapp_connection', exc=e)
            for item in to_send:
                if item['id'] not in finished:
                    db.update_pipeline_lead(item['id'], status='error', error=msg)
                    failed += 1
        finally:
            if session is not None:
                self.close_session(session)

        logger.info("Run %s: send done — %d sent, %d failed", run.id[:8], sent, failed)
        return StageResult(processed=sent, failed=failed)
