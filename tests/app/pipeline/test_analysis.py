"""Tests for app.pipeline.analysis — scrape + score per lead."""
import pytest

from app.models.run import Run
from app.pipeline.analysis import AnalyzeStage, RATE_LIMIT_NOTE, build_score_details
from app.pipeline.base import StageContext
from app.services import db
from app.services.rate_limit import RateLimitError


def _imported_run(make_run, candidates):
    run = make_run()
    leads = db.upsert_leads(candidates, run.niche, run.city)
    db.create_pipeline_leads(run.id, leads)
    return run


class _FakeAnalyze(AnalyzeStage):
    """Analyze stage with scripted scores per website."""

    def __init__(self, scores):
        self.scores = scores

    def scrape(self, url):
        outcome = self.scores[url]
        if isinstance(outcome, Exception):
            raise outcome
        return {'site_type': 'landing', 'visible_text': 'Pan casero', 'image_urls': ['a.jpg'],
                'title': 'La Espiga', 'social_links': []}

    def score(self, url, scraped):
        return self.scores[url], {'summary': f'Score {self.scores[url]}', 'problems': []}


class TestBuildScoreDetails:

    def test_keeps_extraction_snapshot(self):
        details = build_score_details({'summary': 's', 'design': 3}, {
            'site_type': 'landing', 'image_urls': [f'{i}.jpg' for i in range(12)],
            'visible_text': 'x' * 5000, 'title': 'T',
        })
        assert details['summary'] == 's'
        assert details['design'] == 3
        assert len(details['scraped_images']) == 8
        assert len(details['visible_text']) == 2000
        assert details['page_title'] == 'T'
        assert details['emails'] == []


class TestAnalyzeStage:
    """Each lead is scored and persisted independently."""

    def test_scores_and_marks_candidates(self, make_run, sample_candidates):
        run = _imported_run(make_run, sample_candidates)
        stage = _FakeAnalyze({
            'https://laespiga.example.com': 4,
            'https://eltornillo.example.com': 8,
        })
        result = stage.run(StageContext(run, 'analyze'))

        assert result.processed == 2
        items = db.list_pipeline_leads(run.id)
        assert [(i['status'], i['score']) for i in items] == [('analyzed', 4), ('analyzed', 8)]
        weak, good = (db.get_lead(i['lead_id']) for i in items)
        assert weak['status'] == 'candidate'
        assert good['status'] == 'analyzed'
        assert weak['score_summary'] == 'Score 4'
        assert weak['score_details']['site_type'] == 'landing'
        stored = Run.load(run.id)
        assert stored.analyzed == 2
        assert stored.stage == 'analyzing'

    def test_missing_website_is_item_error(self, make_run, sample_candidates):
        no_site = dict(sample_candidates[0], website='')
        run = _imported_run(make_run, [no_site, sample_candidates[1]])
        result = _FakeAnalyze({'https://eltornillo.example.com': 7}).run(StageContext(run, 'analyze'))

        assert result.failed == 1
        assert result.processed == 1
        first = db.list_pipeline_leads(run.id)[0]
        assert first['status'] == 'error'
        assert first['error'] == 'Sin website'
        entry = Run.load(run.id).errors[-1]
        assert entry['step'] == 'lead_precheck'
        assert entry['code'] == 'missing_website'
        assert entry['business_name'] == 'Panadería La Espiga'

    def test_one_failure_does_not_stop_the_others(self, make_run, sample_candidates):
        run = _imported_run(make_run, sample_candidates)
        stage = _FakeAnalyze({
            'https://laespiga.example.com': RuntimeError('Timeout al cargar'),
            'https://eltornillo.example.com': 5,
        })
        result = stage.run(StageContext(run, 'analyze'))

        assert (result.processed, result.failed) == (1, 1)
        items = db.list_pipeline_leads(run.id)
        assert items[0]['status'] == 'error'
        assert items[0]['error'] == 'Timeout al cargar'
        assert items[1]['status'] == 'analyzed'
        assert Run.load(run.id).errors[-1]['step'] == 'analyze_lead'

    def test_rate_limit_resets_item_and_propagates(self, make_run, sample_candidates):
        run = _imported_run(make_run, sample_candidates[:1])
        stage = _FakeAnalyze({'https://laespiga.example.com': RateLimitError('Rate limit in analyze_website')})

        with pytest.raises(RateLimitError):
            stage.run(StageContext(run, 'analyze'))

        item = db.list_pipeline_leads(run.id)[0]
        assert item['status'] == 'pending'
        assert item['error'] == RATE_LIMIT_NOTE
        assert Run.load(run.id).errors[-1]['code'] == 'rate_limit'

    def test_orphaned_analyzing_items_are_picked_up(self, make_run, sample_candidates):
        run = _imported_run(make_run, sample_candidates[:1])
        item = db.list_pipeline_leads(run.id)[0]
        db.update_pipeline_lead(item['id'], status='analyzing')
        result = _FakeAnalyze({'https://laespiga.example.com': 3}).run(StageContext(run, 'analyze'))
        assert result.processed == 1

    def test_cancelled_run_stops_before_work(self, make_run, sample_candidates):
        run = _imported_run(make_run, sample_candidates)
        Run.load(run.id).cancel()
        result = _FakeAnalyze({}).run(StageContext(run, 'analyze'))
        assert result.cancelled
        assert {i['status'] for i in db.list_pipeline_leads(run.id)} == {'pending'}
