"""
Run model — pipeline run tracking with a narrow update API.

A Run represents one execution of the 6-stage pipeline for a niche/city.
Every mutation is a field-level UPDATE keyed by run id (last write wins);
counters are incremented in SQL and the error log is capped on write.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional, List

from app.config import (
    MAX_RUN_ERRORS, RUN_STATUSES, STAGE_DONE, STAGE_ERROR, STAGE_LABELS, TERMINAL_STATUSES,
)
from app.database import session_scope
from app.models.db_run import DbRun

logger = logging.getLogger('models.run')

COUNTERS = ('total_leads', 'analyzed', 'sites_generated', 'messages_sent')


class RunStateError(Exception):
    """Raised when a run is asked to make a transition its status forbids."""


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class Run:
    """
    Database-backed Run object.

    Attributes mirror the pipeline_runs row. Instances are snapshots: use
    refresh() to re-read, and the mutators below to write.
    """

    def __init__(
        self,
        id: str = None,
        niche: str = '',
        city: str = '',
        config: Dict = None,
        status: str = 'running',
        stage: str = 'searching',
    ):
        self.id = id or str(uuid.uuid4())
        self.niche = niche
        self.city = city
        self.config = config or {}
        self.status = status
        self.stage = stage
        self.search_results = None
        self.total_leads = 0
        self.analyzed = 0
        self.sites_generated = 0
        self.messages_sent = 0
        self.errors: List[Dict] = []
        self.version = 1
        self.created_at = _utcnow()
        self.updated_at = self.created_at
        self.completed_at = None

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'niche': self.niche,
            'city': self.city,
            'status': self.status,
            'stage': self.stage,
            'config': self.config,
            'total_leads': self.total_leads,
            'analyzed': self.analyzed,
            'sites_generated': self.sites_generated,
            'messages_sent': self.messages_sent,
            'errors': self.errors,
            'has_search_results': self.search_results is not None,
            'version': self.version,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'completed_at': _iso(self.completed_at),
        }

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # ── Persistence ───────────────────────────────────────────────────

    def insert(self):
        """INSERT the run row. Called once, at creation."""
        with session_scope() as session:
            session.add(DbRun(
                id=self.id,
                niche=self.niche,
                city=self.city,
                status=self.status,
                stage=self.stage,
                config=self.config,
                errors=[],
                version=1,
                created_at=self.created_at,
                updated_at=self.updated_at,
            ))
        return self

    @classmethod
    def _from_db_run(cls, db_run) -> 'Run':
        """Build a Run from a DbRun row."""
        run = cls.__new__(cls)
        run.id = db_run.id
        run.niche = db_run.niche
        run.city = db_run.city
        run.status = db_run.status
        run.stage = db_run.stage or ''
        run.config = db_run.config or {}
        run.search_results = db_run.search_results
        run.total_leads = db_run.total_leads or 0
        run.analyzed = db_run.analyzed or 0
        run.sites_generated = db_run.sites_generated or 0
        run.messages_sent = db_run.messages_sent or 0
        run.errors = list(db_run.errors or [])
        run.version = db_run.version or 1
        run.created_at = db_run.created_at
        run.updated_at = db_run.updated_at
        run.completed_at = db_run.completed_at
        return run

    @classmethod
    def load(cls, run_id: str) -> Optional['Run']:
        """Load a run from the database."""
        with session_scope() as session:
            db_run = session.get(DbRun, run_id)
            return cls._from_db_run(db_run) if db_run else None

    @classmethod
    def list_recent(cls, limit: int = 20) -> List['Run']:
        """List recent runs, newest first."""
        with session_scope() as session:
            rows = session.query(DbRun).order_by(DbRun.created_at.desc()).limit(limit).all()
            return [cls._from_db_run(row) for row in rows]

    @classmethod
    def list_running_before(cls, cutoff: datetime) -> List['Run']:
        """Running runs whose last update is older than cutoff."""
        cutoff = cutoff.astimezone(timezone.utc)
        with session_scope() as session:
            rows = session.query(DbRun).filter(
                DbRun.status == 'running',
                DbRun.updated_at < cutoff,
            ).all()
            return [cls._from_db_run(row) for row in rows]

    def refresh(self) -> 'Run':
        fresh = Run.load(self.id)
        if fresh is None:
            raise LookupError(f"Run {self.id} not found")
        self.__dict__.update(fresh.__dict__)
        return self

    def current_status(self) -> Optional[str]:
        """Re-read only the status column."""
        with session_scope() as session:
            status = session.query(DbRun.status).filter(DbRun.id == self.id).scalar()
        if status is not None:
            self.status = status
        return status

    def is_cancelled(self) -> bool:
        return self.current_status() == 'cancelled'

    def _update(self, require_status: str = None, **fields) -> bool:
        """Field-level UPDATE; bumps version and updated_at. Returns False if no row matched."""
        if 'status' in fields and fields['status'] not in RUN_STATUSES:
            raise ValueError(f"Unknown run status: {fields['status']}")
        now = _utcnow()
        values = dict(fields)
        values['updated_at'] = now
        values['version'] = DbRun.version + 1
        with session_scope() as session:
            query = session.query(DbRun).filter(DbRun.id == self.id)
            if require_status:
                query = query.filter(DbRun.status == require_status)
            matched = query.update(values, synchronize_session=False)
        if matched:
            for k, v in fields.items():
                if hasattr(self, k) and not hasattr(v, 'expression'):
                    setattr(self, k, v)
            self.updated_at = now
            self.version += 1
        return bool(matched)

    # ── Narrow update API ─────────────────────────────────────────────

    def set_stage(self, stage_label: str):
        """Set the user-facing stage label."""
        self._update(stage=stage_label)

    def touch(self):
        """Heartbeat — refresh updated_at so the reaper leaves us alone."""
        self._update()

    def increment(self, counter: str, by: int = 1):
        """Atomically increment one of the run counters."""
        if counter not in COUNTERS:
            raise ValueError(f"Unknown counter: {counter}")
        self._update(**{counter: getattr(DbRun, counter) + by})
        setattr(self, counter, getattr(self, counter) + by)

    def set_counters(self, **counts):
        for name in counts:
            if name not in COUNTERS:
                raise ValueError(f"Unknown counter: {name}")
        self._update(**counts)

    def cache_search_results(self, results: List[Dict]):
        """Store the viable search snapshot for the import stage."""
        self._update(search_results=results)

    def append_error(
        self,
        stage: str,
        step: str,
        message: str,
        lead_id=None,
        business_name: str = None,
        code: str = None,
    ):
        """Append an entry to the run's error log, keeping the newest MAX_RUN_ERRORS."""
        entry = {
            'at': _utcnow().isoformat(),
            'stage': stage,
            'step': step,
            'error': message,
        }
        if lead_id is not None:
            entry['lead_id'] = lead_id
        if business_name:
            entry['business_name'] = business_name
        if code:
            entry['code'] = code

        with session_scope() as session:
            db_run = session.get(DbRun, self.id)
            if db_run is None:
                raise LookupError(f"Run {self.id} not found")
            errors = list(db_run.errors or [])
            errors.append(entry)
            errors = errors[-MAX_RUN_ERRORS:]
            db_run.errors = errors
            db_run.updated_at = _utcnow()
            db_run.version = (db_run.version or 1) + 1
        self.errors = errors
        return entry

    # ── Status transitions ────────────────────────────────────────────

    def complete(self) -> bool:
        """running → completed."""
        now = _utcnow()
        done = self._update(require_status='running', status='completed',
                            stage=STAGE_DONE, completed_at=now)
        if not done:
            logger.info("Run %s not completed — no longer running", self.id[:8])
        return done

    def fail(self) -> bool:
        """running → failed."""
        return self._update(require_status='running', status='failed', stage=STAGE_ERROR)

    def cancel(self):
        """running → cancelled."""
        if not self._update(require_status='running', status='cancelled'):
            status = self.current_status()
            if status is None:
                raise LookupError(f"Run {self.id} not found")
            raise RunStateError(f"Cannot cancel a run with status '{status}'")

    def resume(self, stage: str):
        """failed/cancelled (or paused running) → running at the given stage."""
        self._update(status='running', stage=STAGE_LABELS.get(stage, stage), completed_at=None)
