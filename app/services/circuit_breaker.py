"""
Circuit breakers for the external services a run depends on.

State lives in Redis so every web process and RQ worker sees the same
circuit:
  - CLOSED    → calls pass through; consecutive failures are counted
  - OPEN      → calls short-circuit with CircuitOpenError until reset_timeout
  - HALF_OPEN → exactly one probe call is let through; success closes the
                circuit, failure re-opens it at once

Stages run collaborator calls from several threads, so the half-open probe is
claimed with SET NX: the other threads keep getting CircuitOpenError until the
probe settles. An open circuit is an item-level failure for the stage that
hit it. Health counters feed GET /api/health.
"""
import logging
import time
from functools import wraps

from app.config import CIRCUIT_BREAKERS

logger = logging.getLogger('services.circuit_breaker')

# State constants
CLOSED = 'closed'
OPEN = 'open'
HALF_OPEN = 'half_open'


class CircuitOpenError(Exception):
    """Raised when calling through an open circuit breaker."""
    def __init__(self, name, retry_after=None):
        self.name = name
        self.retry_after = retry_after
        wait = f" — reintentar en {int(retry_after)}s" if retry_after else ''
        super().__init__(f"Servicio '{name}' no disponible (circuito abierto){wait}")


class CircuitBreaker:
    """
    Redis-backed circuit breaker for one service.

        cb = CircuitBreaker('places', redis_client, failure_threshold=3, reset_timeout=300)
        places = cb.call(requests.post, url, json=body)

    `ignore` is a predicate for errors that propagate without counting as a
    failure (the Anthropic breaker ignores rate limits, which pause the run
    instead).
    """

    PREFIX = 'cb'

    def __init__(self, name, redis_client, failure_threshold=3, reset_timeout=300, ignore=None):
        self.name = name
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.ignore = ignore

    def _key(self, part):
        return f'{self.PREFIX}:{self.name}:{part}'

    # ── State ─────────────────────────────────────────────────────────

    @property
    def state(self):
        try:
            s = self.redis.get(self._key('state'))
            if s is None:
                return CLOSED
            if s == OPEN and self._seconds_until_retry() == 0:
                self.redis.set(self._key('state'), HALF_OPEN)
                return HALF_OPEN
            return s
        except Exception as e:
            # Redis down: let calls through rather than stall every run
            logger.warning("Circuit '%s' state unavailable, failing open: %s", self.name, e)
            return CLOSED

    def _seconds_until_retry(self):
        last = self.redis.get(self._key('opened_at'))
        if not last:
            return 0
        return max(0.0, self.reset_timeout - (time.time() - float(last)))

    @property
    def failure_count(self):
        try:
            val = self.redis.get(self._key('failures'))
            return int(val) if val else 0
        except Exception:
            return 0

    def _claim_probe(self):
        """True for the single caller allowed through a half-open circuit."""
        try:
            return bool(self.redis.set(self._key('probe'), '1', nx=True, ex=max(1, int(self.reset_timeout))))
        except Exception:
            return True

    # ── Core call logic ───────────────────────────────────────────────

    def call(self, func, *args, **kwargs):
        """Execute func through the circuit breaker."""
        current = self.state

        if current == OPEN:
            raise CircuitOpenError(self.name, retry_after=self._seconds_until_retry())
        if current == HALF_OPEN and not self._claim_probe():
            raise CircuitOpenError(self.name)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if self.ignore is not None and self.ignore(e):
                if current == HALF_OPEN:
                    self._release_probe()
                raise
            self._on_failure(e, probing=current == HALF_OPEN)
            raise
        self._on_success()
        return result

    def _release_probe(self):
        try:
            self.redis.delete(self._key('probe'))
        except Exception:
            pass

    def _on_success(self):
        try:
            pipe = self.redis.pipeline()
            pipe.set(self._key('state'), CLOSED)
            pipe.set(self._key('failures'), 0)
            pipe.delete(self._key('probe'), self._key('opened_at'))
            pipe.hincrby(self._key('health'), 'success', 1)
            pipe.hset(self._key('health'), 'last_success', str(time.time()))
            pipe.execute()
        except Exception as e:
            logger.warning("Circuit '%s': could not record success: %s", self.name, e)

    def _on_failure(self, error, probing=False):
        try:
            count = self.redis.incr(self._key('failures'))
            if probing or count >= self.failure_threshold:
                pipe = self.redis.pipeline()
                pipe.set(self._key('state'), OPEN)
                pipe.set(self._key('opened_at'), str(time.time()))
                pipe.delete(self._key('probe'))
                pipe.execute()
                logger.warning(
                    "Circuit '%s' OPENED (%s, %d/%d failures): %s",
                    self.name, 'probe failed' if probing else 'threshold reached',
                    count, self.failure_threshold, error,
                )
            else:
                logger.info("Circuit '%s' failure %d/%d: %s",
                            self.name, count, self.failure_threshold, error)

            pipe = self.redis.pipeline()
            pipe.hincrby(self._key('health'), 'failure', 1)
            pipe.hset(self._key('health'), 'last_failure', str(time.time()))
            pipe.hset(self._key('health'), 'last_error', str(error)[:200])
            pipe.execute()
        except Exception as e:
            logger.warning("Circuit '%s': could not record failure: %s", self.name, e)

    def reset(self):
        """Manually close the circuit (POST /api/health/<service>/reset)."""
        try:
            pipe = self.redis.pipeline()
            pipe.set(self._key('state'), CLOSED)
            pipe.set(self._key('failures'), 0)
            pipe.delete(self._key('opened_at'), self._key('probe'))
            pipe.execute()
            logger.info("Circuit '%s' manually reset to CLOSED", self.name)
        except Exception as e:
            logger.error("Failed to reset circuit '%s': %s", self.name, e)

    def protect(self, func):
        """Decorator form of call()."""
        @wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return wrapper

    # ── Health ────────────────────────────────────────────────────────

    def get_health(self):
        """Health snapshot for GET /api/health; state 'unknown' when Redis is unreachable."""
        health = {
            'name': self.name,
            'state': 'unknown',
            'failure_count': 0,
            'failure_threshold': self.failure_threshold,
            'reset_timeout': self.reset_timeout,
            'retry_in': None,
            'total_success': 0,
            'total_failure': 0,
            'last_success': None,
            'last_failure': None,
            'last_error': '',
        }
        try:
            data = self.redis.hgetall(self._key('health'))
            state = self.redis.get(self._key('state')) or CLOSED
        except Exception:
            return health

        health.update({
            'state': self.state if state == OPEN else state,
            'failure_count': self.failure_count,
            'total_success': int(data.get('success', 0)),
            'total_failure': int(data.get('failure', 0)),
            'last_success': float(data['last_success']) if data.get('last_success') else None,
            'last_failure': float(data['last_failure']) if data.get('last_failure') else None,
            'last_error': data.get('last_error', ''),
        })
        if health['state'] == OPEN:
            health['retry_in'] = round(self._seconds_until_retry(), 1)
        return health


# ── Registry ─────────────────────────────────────────────────────────────

_registry = {}


def get_breaker(name, redis_client=None, **kwargs):
    """Get or create a named circuit breaker (one per service name)."""
    if name not in _registry:
        if redis_client is None:
            from app.extensions import redis_client as rc
            redis_client = rc
        settings = {**CIRCUIT_BREAKERS.get(name, {}), **kwargs}
        _registry[name] = CircuitBreaker(name, redis_client, **settings)
    return _registry[name]


def get_all_breakers():
    return dict(_registry)


def init_breakers(redis_client):
    """Create the breakers for every service in CIRCUIT_BREAKERS.

    Rate limits are retried by with_rate_limit_retry() and pause the run, so
    they do not count towards opening the Anthropic circuit.
    """
    from app.services.rate_limit import is_rate_limit_error
    breakers = {}
    for name, settings in CIRCUIT_BREAKERS.items():
        ignore = is_rate_limit_error if name == 'anthropic' else None
        breakers[name] = CircuitBreaker(name, redis_client, ignore=ignore, **settings)
    _registry.update(breakers)
    return breakers
