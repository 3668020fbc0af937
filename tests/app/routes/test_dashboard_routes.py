"""Tests for the dashboard blueprint — health, breakers, site previews."""
import pytest

from app.pipeline.sites import site_slug
from app.services import db


@pytest.fixture(autouse=True)
def _redis(mock_redis):
    yield mock_redis


def _lead_with_site(sample_candidates, html='<html><body>Hola</body></html>', slug=None):
    lead = db.upsert_leads(sample_candidates[:1], 'panaderías', 'Córdoba')[0]
    lead_id = lead['id']
    slug = slug or site_slug(lead['business_name'], lead_id)
    db.update_lead(lead_id, score_details={'site_html': html, 'site_slug': slug})
    return lead_id, slug


class TestHealth:

    def test_liveness(self, client):
        resp = client.get('/health')
        assert resp.status_code == 200
        assert resp.get_json() == {'status': 'healthy'}

    def test_services_health(self, client):
        data = client.get('/api/health').get_json()
        assert data['status'] == 'healthy'
        assert {'places', 'anthropic', 'whatsapp'} <= set(data['services'])
        assert data['services']['places']['state'] == 'closed'

    def test_open_breaker_reports_degraded(self, client, mock_redis):
        mock_redis.get.side_effect = lambda key: 'open' if key == 'cb:whatsapp:state' else None
        data = client.get('/api/health').get_json()
        assert data['status'] == 'degraded'
        assert data['services']['whatsapp']['state'] == 'half_open'

    def test_reset_breaker(self, client, mock_redis):
        resp = client.post('/api/health/places/reset')
        assert resp.status_code == 200
        assert resp.get_json()['ok'] is True
        mock_redis.pipeline.return_value.execute.assert_called_once()

    def test_reset_unknown_service(self, client):
        assert client.post('/api/health/fax/reset').status_code == 404


class TestPreview:

    def test_serves_generated_html(self, client, sample_candidates):
        _, slug = _lead_with_site(sample_candidates)
        resp = client.get(f'/preview/{slug}')
        assert resp.status_code == 200
        assert resp.content_type.startswith('text/html')
        assert b'Hola' in resp.data
        assert resp.headers['Cache-Control'] == 'public, max-age=3600'

    def test_slug_must_match(self, client, sample_candidates):
        lead_id, _ = _lead_with_site(sample_candidates)
        resp = client.get(f'/preview/otro-negocio-{lead_id}')
        assert resp.status_code == 404
        assert 'Sitio no encontrado' in resp.get_data(as_text=True)

    def test_slug_without_id(self, client):
        assert client.get('/preview/sin-id').status_code == 404

    def test_missing_html(self, client, sample_candidates):
        _, slug = _lead_with_site(sample_candidates, html='')
        resp = client.get(f'/preview/{slug}')
        assert resp.status_code == 404
        assert 'Sitio no disponible' in resp.get_data(as_text=True)
