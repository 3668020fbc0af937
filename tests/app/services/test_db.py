"""Tests for app.services.db — canonical lead upserts, pipeline items, retry resets."""
import pytest

from app.models.activity import LeadActivity, OutboundMessage
from app.services import db


# ── Canonical leads ──────────────────────────────────────────────────────────

class TestUpsertLeads:
    """upsert_leads() is an idempotent insert-or-ignore keyed on place_id."""

    def test_inserts_new_candidates(self, sample_candidates):
        leads = db.upsert_leads(sample_candidates, 'panaderías', 'Córdoba')
        assert [l['place_id'] for l in leads] == ['place-1', 'place-2']
        assert all(l['status'] == 'new' for l in leads)
        assert leads[0]['niche'] == 'panaderías'
        assert db.known_place_ids(['place-1', 'place-2', 'place-9']) == {'place-1', 'place-2'}

    def test_second_import_does_not_duplicate(self, sample_candidates):
        first = db.upsert_leads(sample_candidates, 'panaderías', 'Córdoba')
        second = db.upsert_leads(sample_candidates, 'panaderías', 'Córdoba')
        assert [l['id'] for l in first] == [l['id'] for l in second]

    def test_existing_lead_is_left_untouched(self, sample_candidates):
        lead = db.upsert_leads(sample_candidates[:1], 'panaderías', 'Córdoba')[0]
        db.update_lead(lead['id'], status='contacted', score=3)
        changed = dict(sample_candidates[0], business_name='Otro nombre')
        again = db.upsert_leads([changed], 'otro', 'Otra')[0]
        assert again['status'] == 'contacted'
        assert again['score'] == 3
        assert again['business_name'] == 'Panadería La Espiga'

    def test_duplicates_within_batch_and_missing_ids(self, sample_candidates):
        batch = [sample_candidates[0], dict(sample_candidates[0]), {'business_name': 'Sin id'}]
        assert len(db.upsert_leads(batch, 'n', 'c')) == 1

    def test_empty(self):
        assert db.upsert_leads([], 'n', 'c') == []
        assert db.known_place_ids([]) == set()


class TestLeadUpdates:

    def test_get_leads_batch(self, sample_candidates):
        leads = db.upsert_leads(sample_candidates, 'n', 'c')
        by_id = db.get_leads([l['id'] for l in leads] + [None])
        assert set(by_id) == {l['id'] for l in leads}

    def test_mark_contacted(self, sample_candidates):
        lead = db.upsert_leads(sample_candidates[:1], 'n', 'c')[0]
        db.mark_lead_contacted(lead['id'])
        fresh = db.get_lead(lead['id'])
        assert fresh['status'] == 'contacted'
        assert fresh['last_contacted_at'] is not None


# ── Pipeline leads ───────────────────────────────────────────────────────────

class TestPipelineLeads:
    """One item per lead per run; contacted leads start skipped."""

    def test_create_is_idempotent(self, make_run, sample_candidates):
        run = make_run()
        leads = db.upsert_leads(sample_candidates, 'n', 'c')
        assert db.create_pipeline_leads(run.id, leads) == 2
        assert db.create_pipeline_leads(run.id, leads) == 0
        assert db.count_pipeline_leads(run.id) == 2

    def test_contacted_lead_starts_skipped(self, make_run, sample_candidates):
        run = make_run()
        leads = db.upsert_leads(sample_candidates, 'n', 'c')
        db.mark_lead_contacted(leads[0]['id'])
        db.create_pipeline_leads(run.id, db.upsert_leads(sample_candidates, 'n', 'c'))
        statuses = [i['status'] for i in db.list_pipeline_leads(run.id)]
        assert statuses == ['skipped', 'pending']

    def test_same_lead_in_two_runs(self, make_run, sample_candidates):
        leads = db.upsert_leads(sample_candidates, 'n', 'c')
        a, b = make_run(), make_run()
        db.create_pipeline_leads(a.id, leads)
        db.create_pipeline_leads(b.id, leads)
        assert db.count_pipeline_leads(a.id) == db.count_pipeline_leads(b.id) == 2

    def test_list_filter_and_counts(self, make_run, sample_candidates):
        run = make_run()
        db.create_pipeline_leads(run.id, db.upsert_leads(sample_candidates, 'n', 'c'))
        first = db.list_pipeline_leads(run.id)[0]
        db.update_pipeline_lead(first['id'], status='analyzed', score=4)
        assert [i['id'] for i in db.list_pipeline_leads(run.id, statuses=['analyzed'])] == [first['id']]
        assert db.status_counts(run.id) == {'analyzed': 1, 'pending': 1}

    def test_unknown_status_rejected(self, make_run, sample_candidates):
        run = make_run()
        db.create_pipeline_leads(run.id, db.upsert_leads(sample_candidates[:1], 'n', 'c'))
        item = db.list_pipeline_leads(run.id)[0]
        with pytest.raises(ValueError, match='Unknown pipeline lead status'):
            db.update_pipeline_lead(item['id'], status='archived')

    def test_reset_status(self, make_run, sample_candidates):
        run = make_run()
        db.create_pipeline_leads(run.id, db.upsert_leads(sample_candidates, 'n', 'c'))
        assert db.reset_pipeline_lead_status(run.id, 'pending', 'analyzed') == 2
        assert db.status_counts(run.id) == {'analyzed': 2}


class TestResetItemsForRetry:
    """In-flight and errored items roll back to their last completed state."""

    def _items(self, run_id, statuses):
        candidates = [
            {'place_id': f'p-{i}', 'business_name': f'Negocio {i}', 'phone': '351 555-0000'}
            for i in range(len(statuses))
        ]
        db.create_pipeline_leads(run_id, db.upsert_leads(candidates, 'n', 'c'))
        items = db.list_pipeline_leads(run_id)
        for item, fields in zip(items, statuses):
            db.update_pipeline_lead(item['id'], **fields)
        return items

    def test_rollback_rules(self, make_run):
        run = make_run()
        self._items(run.id, [
            {'status': 'analyzing'},
            {'status': 'generating_site', 'score': 3},
            {'status': 'generating_message', 'site_url': 'u'},
            {'status': 'sending', 'message': 'hola'},
            {'status': 'error', 'error': 'x'},
            {'status': 'error', 'error': 'x', 'score': 4},
            {'status': 'error', 'error': 'x', 'score': 4, 'site_url': 'u'},
            {'status': 'sent'},
            {'status': 'skipped'},
        ])
        assert db.reset_items_for_retry(run.id) == 7
        after = [(i['status'], i['error']) for i in db.list_pipeline_leads(run.id)]
        assert after == [
            ('pending', None),
            ('analyzed', None),
            ('site_generated', None),
            ('message_ready', None),
            ('pending', None),
            ('analyzed', None),
            ('site_generated', None),
            ('sent', None),
            ('skipped', None),
        ]


# ── Audit trail ──────────────────────────────────────────────────────────────

class TestAuditTrail:

    def test_activity_and_message_rows(self, sample_candidates, patch_get_session):
        lead = db.upsert_leads(sample_candidates[:1], 'n', 'c')[0]
        db.record_activity(lead['id'], 'contacted', 'Mensaje enviado')
        db.record_message(lead['id'], 'Hola!', template_used='autopilot')

        session = patch_get_session()
        try:
            activity = session.query(LeadActivity).filter_by(lead_id=lead['id']).one()
            message = session.query(OutboundMessage).filter_by(lead_id=lead['id']).one()
        finally:
            session.close()
        assert activity.action == 'contacted'
        assert message.channel == 'whatsapp'
        assert message.template_used == 'autopilot'
