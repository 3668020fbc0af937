"""Tests for app.pipeline.reaper — stale running runs are failed."""
from datetime import datetime, timedelta, timezone

from app.config import STALE_RUN_MINUTES
from app.models.db_run import DbRun
from app.models.run import Run
from app.pipeline.reaper import reap_stale_runs


def _backdate(session_factory, run_id, minutes):
    session = session_factory()
    try:
        session.query(DbRun).filter(DbRun.id == run_id).update(
            {'updated_at': datetime.now(timezone.utc) - timedelta(minutes=minutes)},
            synchronize_session=False,
        )
        session.commit()
    finally:
        session.close()


class TestReapStaleRuns:

    def test_idle_run_is_failed(self, make_run, session_factory):
        run = make_run()
        run.set_stage('analyzing')
        _backdate(session_factory, run.id, STALE_RUN_MINUTES + 5)

        assert reap_stale_runs() == [run.id]

        stored = Run.load(run.id)
        assert stored.status == 'failed'
        entry = stored.errors[-1]
        assert entry['step'] == 'stale_timeout'
        assert entry['code'] == 'stale'
        assert entry['stage'] == 'analyzing'

    def test_recent_run_is_kept(self, make_run, session_factory):
        run = make_run()
        _backdate(session_factory, run.id, 5)
        assert reap_stale_runs() == []
        assert Run.load(run.id).status == 'running'

    def test_finished_runs_are_ignored(self, make_run):
        run = make_run()
        run.complete()
        later = datetime.now(timezone.utc) + timedelta(minutes=STALE_RUN_MINUTES + 1)
        assert reap_stale_runs(now=later) == []
        assert Run.load(run.id).status == 'completed'

    def test_reaped_run_can_be_retried(self, make_run):
        from unittest.mock import patch
        from app.pipeline.manager import retry_run

        run = make_run()
        later = datetime.now(timezone.utc) + timedelta(minutes=STALE_RUN_MINUTES + 1)
        reap_stale_runs(now=later)
        with patch('app.pipeline.manager.continuation.get_channel') as mock_channel:
            assert retry_run(run.id)['stage'] == 'search'
        mock_channel.return_value.schedule.assert_called_once()
