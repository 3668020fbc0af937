"""Tests for app.pipeline.importer — snapshot → canonical leads + pipeline items."""
from app.models.run import Run
from app.pipeline.base import StageContext
from app.pipeline.importer import ImportStage
from app.services import db


class TestImportStage:

    def test_imports_snapshot(self, make_run, sample_candidates):
        run = make_run()
        run.cache_search_results(sample_candidates)
        result = ImportStage().run(StageContext(run, 'import'))

        assert result.processed == 2
        stored = Run.load(run.id)
        assert stored.total_leads == 2
        assert stored.stage == 'importing'
        items = db.list_pipeline_leads(run.id)
        assert [i['business_name'] for i in items] == ['Panadería La Espiga', 'Ferretería El Tornillo']
        assert all(i['status'] == 'pending' for i in items)

    def test_reimport_is_idempotent(self, make_run, sample_candidates):
        run = make_run()
        run.cache_search_results(sample_candidates)
        ImportStage().run(StageContext(run, 'import'))
        result = ImportStage().run(StageContext(run, 'import'))

        assert result.skipped == 2
        assert db.count_pipeline_leads(run.id) == 2
        assert len(db.get_leads(i['lead_id'] for i in db.list_pipeline_leads(run.id))) == 2
        assert Run.load(run.id).total_leads == 2

    def test_empty_snapshot_completes_run(self, make_run):
        run = make_run()
        run.cache_search_results([])
        result = ImportStage().run(StageContext(run, 'import'))
        assert result.run_finished
        assert Run.load(run.id).status == 'completed'

    def test_cancellation_observed(self, make_run, sample_candidates):
        run = make_run()
        run.cache_search_results(sample_candidates)
        Run.load(run.id).cancel()
        result = ImportStage().run(StageContext(run, 'import'))
        assert result.cancelled
