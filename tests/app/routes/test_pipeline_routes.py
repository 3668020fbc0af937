"""Tests for the pipeline API blueprint."""
from unittest.mock import patch

import pytest

from app.models.run import Run
from app.services import db


@pytest.fixture(autouse=True)
def _redis(mock_redis):
    """The app factory builds circuit breakers on the Redis client."""
    yield mock_redis


@pytest.fixture
def channel():
    with patch('app.pipeline.manager.continuation.get_channel') as mock_channel:
        yield mock_channel.return_value


class TestCreateRun:

    def test_missing_fields(self, client):
        resp = client.post('/api/pipeline/run', json={'niche': 'dentistas'})
        assert resp.status_code == 400
        assert 'requeridos' in resp.get_json()['error']

    def test_accepted(self, client, channel):
        resp = client.post('/api/pipeline/run', json={
            'niche': 'dentistas', 'city': 'Mendoza', 'maxResults': 4, 'skipSending': True,
        })
        assert resp.status_code == 202
        run_id = resp.get_json()['id']
        stored = Run.load(run_id)
        assert stored.config['max_results'] == 4
        assert stored.config['skip_sending'] is True
        channel.schedule.assert_called_once_with(run_id, 'search', 'init')

    def test_bad_config_is_400(self, client, channel):
        resp = client.post('/api/pipeline/run', json={'niche': 'x', 'city': 'y', 'max_results': 'diez'})
        assert resp.status_code == 400
        channel.schedule.assert_not_called()


class TestReadRuns:

    def test_list_newest_first(self, client, make_run):
        first = make_run(niche='uno')
        second = make_run(niche='dos')
        data = client.get('/api/pipeline').get_json()
        ids = [r['id'] for r in data]
        assert ids.index(second.id) < ids.index(first.id)

    def test_list_limit(self, client, make_run):
        for _ in range(3):
            make_run()
        assert len(client.get('/api/pipeline?limit=2').get_json()) == 2

    def test_stages_in_order(self, client):
        stages = client.get('/api/pipeline/stages').get_json()
        assert [s['stage'] for s in stages] == [
            'search', 'import', 'analyze', 'generate_sites', 'generate_messages', 'send',
        ]
        assert all({'description', 'apis', 'concurrency'} <= set(s) for s in stages)

    def test_get_run(self, client, make_run):
        run = make_run()
        data = client.get(f'/api/pipeline/{run.id}').get_json()
        assert data['status'] == 'running'
        assert data['lead_counts'] == {}

    def test_get_missing_run(self, client):
        assert client.get('/api/pipeline/nope').status_code == 404

    def test_run_leads(self, client, make_run, sample_candidates):
        run = make_run()
        db.create_pipeline_leads(run.id, db.upsert_leads(sample_candidates, run.niche, run.city))
        data = client.get(f'/api/pipeline/{run.id}/leads').get_json()
        assert [i['business_name'] for i in data] == ['Panadería La Espiga', 'Ferretería El Tornillo']
        assert client.get('/api/pipeline/nope/leads').status_code == 404


class TestRunActions:

    def test_cancel(self, client, make_run):
        run = make_run()
        resp = client.post(f'/api/pipeline/{run.id}/cancel')
        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'cancelled'

        again = client.post(f'/api/pipeline/{run.id}/cancel')
        assert again.status_code == 409

    def test_cancel_missing(self, client):
        assert client.post('/api/pipeline/nope/cancel').status_code == 404

    def test_retry_failed_run(self, client, make_run, channel):
        run = make_run()
        run.fail()
        resp = client.post(f'/api/pipeline/{run.id}/retry')
        assert resp.status_code == 202
        assert resp.get_json() == {'id': run.id, 'stage': 'search'}
        channel.schedule.assert_called_once_with(run.id, 'search', 'init')

    def test_retry_running_run_conflicts(self, client, make_run):
        run = make_run()
        assert client.post(f'/api/pipeline/{run.id}/retry').status_code == 409


class TestContinuationEndpoints:

    @patch('app.routes.pipeline.continuation.run_in_background')
    def test_continue_a_accepts(self, mock_bg, client):
        resp = client.post('/api/pipeline/run/continue-a', json={'runId': 'run-1', 'stage': 'analyze'})
        assert resp.status_code == 202
        assert resp.get_json()['phase'] == 'a'
        mock_bg.assert_called_once_with('run-1', 'analyze', 'a')

    @patch('app.routes.pipeline.continuation.run_in_background')
    def test_continue_b_accepts_snake_case(self, mock_bg, client):
        resp = client.post('/api/pipeline/run/continue-b', json={'run_id': 'run-1', 'stage': 'send'})
        assert resp.status_code == 202
        mock_bg.assert_called_once_with('run-1', 'send', 'b')

    @patch('app.routes.pipeline.continuation.run_in_background')
    def test_missing_fields(self, mock_bg, client):
        resp = client.post('/api/pipeline/run/continue-a', json={'runId': 'run-1'})
        assert resp.status_code == 400
        mock_bg.assert_not_called()

    @patch('app.routes.pipeline.continuation.run_in_background')
    def test_unknown_stage_still_dispatched(self, mock_bg, client):
        resp = client.post('/api/pipeline/run/continue-a', json={'runId': 'run-1', 'stage': 'teleport'})
        assert resp.status_code == 202
        mock_bg.assert_called_once()

    @patch('app.routes.pipeline.continuation.run_in_background')
    def test_token_required_when_configured(self, mock_bg, client):
        body = {'runId': 'run-1', 'stage': 'analyze'}
        with patch('app.routes.pipeline.PIPELINE_INTERNAL_TOKEN', 's3cret'):
            denied = client.post('/api/pipeline/run/continue-a', json=body)
            allowed = client.post('/api/pipeline/run/continue-a', json=body,
                                  headers={'X-Pipeline-Token': 's3cret'})
        assert denied.status_code == 401
        assert allowed.status_code == 202
        assert mock_bg.call_count == 1
