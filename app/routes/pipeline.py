"""
Pipeline routes — run lifecycle API and the internal continuation endpoints.
"""
import logging
from flask import Blueprint, jsonify, request

from app.config import PIPELINE_INTERNAL_TOKEN, PIPELINE_STAGES
from app.models.run import RunStateError
from app.pipeline import continuation
from app.pipeline.base import get_pipeline_info
from app.pipeline.manager import (
    STAGE_REGISTRY, cancel_run, get_run_leads, get_run_status, launch_run, list_runs, retry_run,
)

logger = logging.getLogger('routes.pipeline')

bp = Blueprint('pipeline', __name__)


def _error_response(e: Exception):
    """Map a manager exception to a JSON error response."""
    if isinstance(e, LookupError):
        return jsonify({'error': str(e) or 'Run not found'}), 404
    if isinstance(e, RunStateError):
        return jsonify({'error': str(e)}), 409
    if isinstance(e, ValueError):
        return jsonify({'error': str(e)}), 400
    logger.exception("Pipeline API error: %s", e)
    return jsonify({'error': str(e) or 'Error desconocido'}), 500


# ── Run API ──────────────────────────────────────────────────────────────────

@bp.route('/api/pipeline/run', methods=['POST'])
def create_run():
    """Create a new pipeline run and start it in the background."""
    data = request.get_json(silent=True) or {}
    niche = (data.get('niche') or '').strip()
    city = (data.get('city') or '').strip()
    if not niche or not city:
        return jsonify({'error': 'niche y city son requeridos'}), 400
    try:
        run = launch_run(niche, city, data)
    except Exception as e:
        return _error_response(e)
    return jsonify({'id': run.id}), 202


@bp.route('/api/pipeline')
def runs_index():
    """List recent runs (stale runs are failed first)."""
    limit = request.args.get('limit', 20, type=int)
    try:
        return jsonify(list_runs(limit=limit))
    except Exception as e:
        return _error_response(e)


@bp.route('/api/pipeline/stages')
def stages_info():
    """Stage registry metadata, in pipeline order."""
    return jsonify(get_pipeline_info(STAGE_REGISTRY))


@bp.route('/api/pipeline/<run_id>')
def get_run(run_id):
    """Get a single run's status."""
    status = get_run_status(run_id)
    if not status:
        return jsonify({'error': 'Run not found'}), 404
    return jsonify(status)


@bp.route('/api/pipeline/<run_id>/leads')
def run_leads(run_id):
    try:
        return jsonify(get_run_leads(run_id))
    except Exception as e:
        return _error_response(e)


@bp.route('/api/pipeline/<run_id>/cancel', methods=['POST'])
def cancel(run_id):
    try:
        return jsonify(cancel_run(run_id))
    except Exception as e:
        return _error_response(e)


@bp.route('/api/pipeline/<run_id>/retry', methods=['POST'])
def retry(run_id):
    """Resume a failed, cancelled or rate-limit-paused run."""
    try:
        return jsonify(retry_run(run_id)), 202
    except Exception as e:
        return _error_response(e)


# ── Internal continuation endpoints ──────────────────────────────────────────

def _continue(phase: str):
    if PIPELINE_INTERNAL_TOKEN and request.headers.get('X-Pipeline-Token') != PIPELINE_INTERNAL_TOKEN:
        return jsonify({'error': 'Unauthorized'}), 401

    data = request.get_json(silent=True) or {}
    run_id = data.get('runId') or data.get('run_id')
    stage = data.get('stage')
    if not run_id or not stage:
        return jsonify({'error': 'runId and stage are required'}), 400
    if stage not in PIPELINE_STAGES:
        # still dispatched so the run records invalid_stage
        logger.warning("Continuation for unknown stage '%s' (run %s)", stage, run_id)

    continuation.run_in_background(run_id, stage, phase)
    return jsonify({'accepted': True, 'runId': run_id, 'stage': stage, 'phase': phase}), 202


@bp.route('/api/pipeline/run/continue-a', methods=['POST'])
def continue_a():
    return _continue('a')


@bp.route('/api/pipeline/run/continue-b', methods=['POST'])
def continue_b():
    return _continue('b')
