"""Shared test fixtures."""
import threading

import pytest
from unittest.mock import patch, MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with schema created, shared across threads."""
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    import app.models.activity
    import app.models.db_run
    import app.models.lead
    import app.models.lead_run
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def patch_get_session(session_factory):
    """Route every get_session() call (and so session_scope()) to the test engine.

    Each unit of work still gets its own session; the write lock serializes
    them the way it does against a file-backed SQLite database.
    """
    with patch('app.database.get_session', side_effect=lambda: session_factory()), \
            patch('app.database._write_lock', threading.RLock()):
        yield session_factory


@pytest.fixture(autouse=True)
def inline_continuation():
    """Run continuations synchronously so a whole run completes inside the test."""
    with patch('app.pipeline.continuation.CONTINUATION_BACKEND', 'inline'):
        yield


@pytest.fixture
def mock_redis():
    """Mock Redis client. Returns a MagicMock with common Redis methods."""
    mock = MagicMock()
    mock.get.return_value = None
    mock.hgetall.return_value = {}
    with patch('app.extensions.redis_client', mock):
        yield mock


@pytest.fixture
def app():
    """Flask test app."""
    from app import create_app
    app = create_app()
    app.config['TESTING'] = True
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c


@pytest.fixture
def make_run():
    """Factory fixture — inserts a running Run row."""
    from app.models.run import Run

    def _make(**overrides):
        config = overrides.pop('config', {'max_results': 5})
        run = Run(
            niche=overrides.pop('niche', 'panaderías'),
            city=overrides.pop('city', 'Córdoba'),
            config=config,
            **overrides,
        )
        return run.insert()
    return _make


@pytest.fixture
def sample_candidates():
    """Search candidates resembling real Places results."""
    return [
        {
            'place_id': 'place-1',
            'business_name': 'Panadería La Espiga',
            'address': 'Av. Colón 123, Córdoba',
            'phone': '0351 15-555-1234',
            'website': 'https://laespiga.example.com',
            'rating': 4.5,
            'category': 'Panadería',
            'photo_url': None,
        },
        {
            'place_id': 'place-2',
            'business_name': 'Ferretería El Tornillo',
            'address': 'Bv. San Juan 456, Córdoba',
            'phone': '0351 422-9876',
            'website': 'https://eltornillo.example.com',
            'rating': 4.1,
            'category': 'Ferretería',
            'photo_url': 'https://maps.example.com/photo.jpg',
        },
    ]
