"""Tests for app.pipeline.send — paced WhatsApp delivery over one session."""
from unittest.mock import MagicMock

from app.models.activity import OutboundMessage
from app.models.run import Run
from app.pipeline.base import StageContext
from app.pipeline.send import SendStage
from app.services import db
from app.services.whatsapp import WhatsAppError


def _ready_run(make_run, count=2, config=None):
    run = make_run(config=config or {'max_results': 5})
    candidates = [
        {'place_id': f'p-{i}', 'business_name': f'Bar {i}', 'phone': f'351 555-000{i}',
         'website': 'https://bar.example.com'}
        for i in range(count)
    ]
    db.create_pipeline_leads(run.id, db.upsert_leads(candidates, run.niche, run.city))
    for item in db.list_pipeline_leads(run.id):
        db.update_pipeline_lead(item['id'], status='message_ready', message=f"Hola {item['business_name']}")
    return run


class _FakeSend(SendStage):
    """Send stage with a mock transport."""

    def __init__(self, fail_phones=(), open_error=None, ready_error=None):
        self.transport = MagicMock()
        self.fail_phones = set(fail_phones)
        self.open_error = open_error
        self.ready_error = ready_error
        self.pauses = 0

    def open_session(self, account_id):
        self.transport.open(account_id)
        if self.open_error:
            raise self.open_error
        return 'session-1'

    def wait_ready(self, session):
        if self.ready_error:
            raise self.ready_error

    def send_text(self, session, phone, text):
        if phone in self.fail_phones:
            raise WhatsAppError(f'No se pudo enviar a {phone}')
        self.transport.send(phone, text)

    def close_session(self, session):
        self.transport.close(session)

    def pause(self):
        self.pauses += 1


class TestSendStage:

    def test_sends_all_and_records(self, make_run, patch_get_session):
        run = _ready_run(make_run, config={'max_results': 5, 'whatsapp_account_id': 'acct-9'})
        stage = _FakeSend()
        result = stage.run(StageContext(run, 'send'))

        assert result.processed == 2
        stage.transport.open.assert_called_once_with('acct-9')
        assert stage.transport.send.call_count == 2
        assert stage.pauses == 1
        stage.transport.close.assert_called_once_with('session-1')

        items = db.list_pipeline_leads(run.id)
        assert {i['status'] for i in items} == {'sent'}
        assert all(db.get_lead(i['lead_id'])['status'] == 'contacted' for i in items)
        assert Run.load(run.id).messages_sent == 2

        session = patch_get_session()
        try:
            assert session.query(OutboundMessage).filter_by(template_used='autopilot').count() == 2
        finally:
            session.close()

    def test_failed_send_marks_only_that_item(self, make_run):
        run = _ready_run(make_run, count=3)
        stage = _FakeSend(fail_phones={'351 555-0001'})
        result = stage.run(StageContext(run, 'send'))

        assert (result.processed, result.failed) == (2, 1)
        assert [i['status'] for i in db.list_pipeline_leads(run.id)] == ['sent', 'error', 'sent']
        assert Run.load(run.id).errors[-1]['step'] == 'send_message'

    def test_session_not_ready_fails_every_item(self, make_run):
        run = _ready_run(make_run)
        stage = _FakeSend(ready_error=WhatsAppError('Timed out waiting for WhatsApp connection'))
        result = stage.run(StageContext(run, 'send'))

        assert result.failed == 2
        items = db.list_pipeline_leads(run.id)
        assert {i['status'] for i in items} == {'error'}
        assert items[0]['error'] == 'Timed out waiting for WhatsApp connection'
        entry = Run.load(run.id).errors[-1]
        assert entry['step'] == 'whatsapp_connection'
        assert entry['code'] == 'whatsapp_connection'
        stage.transport.close.assert_called_once()
        assert Run.load(run.id).messages_sent == 0

    def test_open_failure_has_nothing_to_close(self, make_run):
        run = _ready_run(make_run, count=1)
        stage = _FakeSend(open_error=WhatsAppError('WhatsApp gateway unreachable'))
        stage.run(StageContext(run, 'send'))
        stage.transport.close.assert_not_called()
        assert db.list_pipeline_leads(run.id)[0]['status'] == 'error'

    def test_cancellation_closes_session(self, make_run):
        run = _ready_run(make_run)
        Run.load(run.id).cancel()
        stage = _FakeSend()
        result = stage.run(StageContext(run, 'send'))

        assert result.cancelled
        stage.transport.send.assert_not_called()
        stage.transport.close.assert_called_once()

    def test_nothing_to_send(self, make_run):
        run = make_run()
        stage = _FakeSend()
        result = stage.run(StageContext(run, 'send'))
        assert result.processed == 0
        stage.transport.open.assert_not_called()
