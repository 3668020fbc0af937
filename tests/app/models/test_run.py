"""Tests for app.models.run — database-backed Run with a narrow update API."""
import uuid

import pytest

from app.config import MAX_RUN_ERRORS, STAGE_DONE, STAGE_ERROR
from app.models.run import Run, RunStateError


# ── Initialization ───────────────────────────────────────────────────────────

class TestRunInit:
    """Run.__init__ default values and overrides."""

    def test_default_id_is_uuid(self):
        run = Run(niche='cafés', city='Rosario')
        uuid.UUID(run.id)

    def test_defaults(self):
        run = Run(niche='cafés', city='Rosario')
        assert run.status == 'running'
        assert run.stage == 'searching'
        assert run.errors == []
        assert run.total_leads == 0
        assert run.search_results is None

    def test_to_dict_shape(self):
        data = Run(niche='cafés', city='Rosario', config={'max_results': 3}).to_dict()
        assert data['niche'] == 'cafés'
        assert data['config'] == {'max_results': 3}
        assert data['has_search_results'] is False
        assert data['completed_at'] is None


# ── Persistence ──────────────────────────────────────────────────────────────

class TestRunPersistence:
    """insert / load / list_recent round trips through the database."""

    def test_insert_then_load(self, make_run):
        run = make_run()
        loaded = Run.load(run.id)
        assert loaded is not None
        assert loaded.niche == 'panaderías'
        assert loaded.city == 'Córdoba'
        assert loaded.config == {'max_results': 5}
        assert loaded.status == 'running'

    def test_load_missing_returns_none(self):
        assert Run.load('does-not-exist') is None

    def test_list_recent_newest_first(self, make_run):
        first = make_run(niche='a')
        second = make_run(niche='b')
        ids = [r.id for r in Run.list_recent(10)]
        assert ids.index(second.id) < ids.index(first.id)

    def test_refresh_missing_run_raises(self):
        run = Run(niche='x', city='y')
        with pytest.raises(LookupError):
            run.refresh()


# ── Narrow updates ───────────────────────────────────────────────────────────

class TestRunUpdates:
    """Field-level updates bump version and never clobber unrelated fields."""

    def test_set_stage_bumps_version(self, make_run):
        run = make_run()
        run.set_stage('analyzing')
        loaded = Run.load(run.id)
        assert loaded.stage == 'analyzing'
        assert loaded.version == 2

    def test_increment_is_cumulative(self, make_run):
        run = make_run()
        run.increment('analyzed')
        run.increment('analyzed')
        # a stale snapshot increments on top of the stored value
        Run.load(run.id).increment('analyzed')
        assert Run.load(run.id).analyzed == 3
        assert run.analyzed == 2

    def test_increment_unknown_counter_raises(self, make_run):
        with pytest.raises(ValueError):
            make_run().increment('bogus')

    def test_set_counters_rejects_unknown(self, make_run):
        with pytest.raises(ValueError):
            make_run().set_counters(cost=3)

    def test_stage_label_does_not_overwrite_counters(self, make_run):
        run = make_run()
        stale = Run.load(run.id)
        run.set_counters(total_leads=7)
        stale.set_stage('importing')
        loaded = Run.load(run.id)
        assert loaded.total_leads == 7
        assert loaded.stage == 'importing'

    def test_cache_search_results(self, make_run, sample_candidates):
        run = make_run()
        run.cache_search_results(sample_candidates)
        loaded = Run.load(run.id)
        assert [c['place_id'] for c in loaded.search_results] == ['place-1', 'place-2']
        assert loaded.to_dict()['has_search_results'] is True


# ── Error log ────────────────────────────────────────────────────────────────

class TestRunErrors:
    """append_error() writes structured entries and keeps the newest MAX_RUN_ERRORS."""

    def test_entry_fields(self, make_run):
        run = make_run()
        entry = run.append_error('analyze', 'analyze_lead', 'timeout', lead_id=4,
                                 business_name='Café Luna', code='timeout')
        assert entry['stage'] == 'analyze'
        assert entry['step'] == 'analyze_lead'
        assert entry['error'] == 'timeout'
        assert entry['lead_id'] == 4
        assert entry['business_name'] == 'Café Luna'
        assert entry['code'] == 'timeout'
        assert 'at' in entry

    def test_optional_fields_omitted(self, make_run):
        entry = make_run().append_error('search', 'places', 'boom')
        assert 'lead_id' not in entry
        assert 'code' not in entry

    def test_capped_at_max_keeping_newest(self, make_run):
        run = make_run()
        for i in range(MAX_RUN_ERRORS + 5):
            run.append_error('analyze', 'analyze_lead', f'error {i}')
        errors = Run.load(run.id).errors
        assert len(errors) == MAX_RUN_ERRORS
        assert errors[0]['error'] == 'error 5'
        assert errors[-1]['error'] == f'error {MAX_RUN_ERRORS + 4}'


# ── Status transitions ───────────────────────────────────────────────────────

class TestRunTransitions:
    """complete / fail / cancel / resume only move a run along allowed edges."""

    def test_complete_sets_done_and_completed_at(self, make_run):
        run = make_run()
        assert run.complete() is True
        loaded = Run.load(run.id)
        assert loaded.status == 'completed'
        assert loaded.stage == STAGE_DONE
        assert loaded.completed_at is not None

    def test_complete_ignored_when_cancelled(self, make_run):
        run = make_run()
        Run.load(run.id).cancel()
        assert run.complete() is False
        assert Run.load(run.id).status == 'cancelled'

    def test_fail_sets_error_stage(self, make_run):
        run = make_run()
        assert run.fail() is True
        loaded = Run.load(run.id)
        assert loaded.status == 'failed'
        assert loaded.stage == STAGE_ERROR

    def test_fail_ignored_when_completed(self, make_run):
        run = make_run()
        run.complete()
        assert run.fail() is False
        assert Run.load(run.id).status == 'completed'

    def test_cancel_terminal_run_raises(self, make_run):
        run = make_run()
        run.complete()
        with pytest.raises(RunStateError):
            run.cancel()

    def test_cancel_missing_run_raises_lookup(self):
        with pytest.raises(LookupError):
            Run(id='ghost', niche='x', city='y').cancel()

    def test_is_cancelled_reads_fresh_status(self, make_run):
        run = make_run()
        assert run.is_cancelled() is False
        Run.load(run.id).cancel()
        assert run.is_cancelled() is True

    def test_resume_back_to_running(self, make_run):
        run = make_run()
        run.fail()
        run.resume('analyze')
        loaded = Run.load(run.id)
        assert loaded.status == 'running'
        assert loaded.stage == 'analyzing'
        assert loaded.completed_at is None
