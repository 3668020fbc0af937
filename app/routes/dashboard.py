"""
Dashboard routes — health checks, circuit-breaker status, generated-site previews.
"""
import logging
from flask import Blueprint, Response, jsonify

from app.services import db
from app.services.circuit_breaker import get_all_breakers

logger = logging.getLogger('routes.dashboard')

bp = Blueprint('dashboard', __name__)

NOT_FOUND_PAGE = '<h1>Sitio no encontrado</h1>'
NOT_AVAILABLE_PAGE = '<h1>Sitio no disponible</h1>'


@bp.route('/health')
def health_check():
    """Health check endpoint."""
    return jsonify({"status": "healthy"}), 200


@bp.route('/api/health')
def services_health():
    """Circuit-breaker state for every guarded external service."""
    breakers = get_all_breakers()
    services = {name: cb.get_health() for name, cb in breakers.items()}
    degraded = [name for name, h in services.items() if h.get('state') != 'closed']
    return jsonify({
        'status': 'degraded' if degraded else 'healthy',
        'services': services,
    })


@bp.route('/api/health/<service>/reset', methods=['POST'])
def reset_breaker(service):
    """Manually close a service's circuit breaker."""
    cb = get_all_breakers().get(service)
    if cb is None:
        return jsonify({'error': f'Unknown service: {service}'}), 404
    cb.reset()
    return jsonify({'ok': True, 'service': service, 'state': cb.state})


def _lead_id_from_slug(slug: str):
    """'cafe-luna-42' → 42; None when the slug has no trailing id."""
    tail = slug.rsplit('-', 1)[-1]
    return int(tail) if tail.isdigit() else None


@bp.route('/preview/<slug>')
def preview_site(slug):
    """Serve a generated landing page by its slug."""
    lead_id = _lead_id_from_slug(slug)
    lead = db.get_lead(lead_id) if lead_id is not None else None
    details = (lead or {}).get('score_details') or {}

    if not lead or details.get('site_slug') != slug:
        return Response(NOT_FOUND_PAGE, status=404, mimetype='text/html')
    if not details.get('site_html'):
        return Response(NOT_AVAILABLE_PAGE, status=404, mimetype='text/html')

    return Response(
        details['site_html'],
        status=200,
        content_type='text/html; charset=utf-8',
        headers={'Cache-Control': 'public, max-age=3600'},
    )
