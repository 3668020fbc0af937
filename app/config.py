"""
Centralized configuration — all env vars, constants, stage definitions.
"""
import os


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# ── PostgreSQL ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')

# ── Google Places ─────────────────────────────────────────────────────────────
GOOGLE_PLACES_API_KEY = os.getenv('GOOGLE_PLACES_API_KEY')
GOOGLE_PLACES_API_URL = 'https://places.googleapis.com/v1'
PLACES_LANGUAGE = os.getenv('PLACES_LANGUAGE', 'es')

# ── Anthropic ─────────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY = os.getenv('ANTHROPIC_API_KEY')
ANTHROPIC_MODEL = os.getenv('ANTHROPIC_MODEL', 'claude-sonnet-4-5')
ANTHROPIC_FAST_MODEL = os.getenv('ANTHROPIC_FAST_MODEL', 'claude-haiku-4-5')

# ── WhatsApp gateway ──────────────────────────────────────────────────────────
WHATSAPP_GATEWAY_URL = os.getenv('WHATSAPP_GATEWAY_URL', 'http://localhost:3001')
WHATSAPP_GATEWAY_TOKEN = os.getenv('WHATSAPP_GATEWAY_TOKEN')

# ── Cloudflare R2 (generated sites) ───────────────────────────────────────────
R2_ACCESS_KEY_ID = os.getenv('R2_ACCESS_KEY_ID')
R2_SECRET_ACCESS_KEY = os.getenv('R2_SECRET_ACCESS_KEY')
R2_BUCKET_NAME = os.getenv('R2_BUCKET_NAME')
R2_ENDPOINT_URL = os.getenv('R2_ENDPOINT_URL')
R2_PUBLIC_URL = os.getenv('R2_PUBLIC_URL')

# ── Public URL of this service (preview links + self-continuation) ────────────
APP_URL = os.getenv('APP_URL', 'http://localhost:5000').rstrip('/')

# ── Continuation ─────────────────────────────────────────────────────────────
# rq | local | http | inline
CONTINUATION_BACKEND = os.getenv('CONTINUATION_BACKEND', 'rq')
PIPELINE_INTERNAL_TOKEN = os.getenv('PIPELINE_INTERNAL_TOKEN')
CONTINUATION_ATTEMPTS = 3
CONTINUATION_RETRY_DELAYS = [2, 5]          # seconds between trigger attempts
CONTINUATION_LOOP_STATUS = 508
CONTINUATION_LOOP_MARKER = 'INFINITE_LOOP_DETECTED'
JOB_TIMEOUT = 900

# ── Circuit breakers (service → thresholds) ───────────────────────────────────
CIRCUIT_BREAKERS = {
    'places':    {'failure_threshold': 3, 'reset_timeout': 300},
    'anthropic': {'failure_threshold': 5, 'reset_timeout': 60},
    'whatsapp':  {'failure_threshold': 3, 'reset_timeout': 120},
}

# ── Mock collaborators (local demo runs) ─────────────────────────────────────
MOCK_PIPELINE = bool(os.getenv('MOCK_PIPELINE'))

# ── Pipeline stage definitions ────────────────────────────────────────────────
PIPELINE_STAGES = [
    'search',
    'import',
    'analyze',
    'generate_sites',
    'generate_messages',
    'send',
]

# Stage → skip flag in the run config
STAGE_SKIP_FLAGS = {
    'analyze': 'skip_analysis',
    'generate_sites': 'skip_site_generation',
    'generate_messages': 'skip_messages',
    'send': 'skip_sending',
}

# Stage → user-facing label stored on the run
STAGE_LABELS = {
    'search': 'searching',
    'import': 'importing',
    'analyze': 'analyzing',
    'generate_sites': 'generating_sites',
    'generate_messages': 'generating_messages',
    'send': 'sending',
}
STAGE_DONE = 'done'
STAGE_ERROR = 'error'

# ── Run status values ─────────────────────────────────────────────────────────
RUN_STATUSES = [
    'running',
    'completed',
    'failed',
    'cancelled',
]
TERMINAL_STATUSES = ('completed', 'failed', 'cancelled')

# ── Pipeline lead status values ───────────────────────────────────────────────
LEAD_STATUSES = [
    'pending',
    'analyzing',
    'analyzed',
    'generating_site',
    'site_generated',
    'generating_message',
    'message_ready',
    'sending',
    'sent',
    'skipped',
    'error',
]

# ── Canonical lead (CRM) status values ───────────────────────────────────────
CRM_STATUS_NEW = 'new'
CRM_STATUS_ANALYZED = 'analyzed'
CRM_STATUS_CANDIDATE = 'candidate'
CRM_STATUS_SITE_GENERATED = 'site_generated'
CRM_STATUS_CONTACTED = 'contacted'

# ── Limits and pacing ─────────────────────────────────────────────────────────
MAX_RUN_ERRORS = 80
MAX_SEARCH_FETCH = 60
DEFAULT_MAX_RESULTS = 20
STALE_RUN_MINUTES = int(os.getenv('STALE_RUN_MINUTES', '20'))
GOOD_SCORE_THRESHOLD = 6
SITE_BATCH_SIZE = int(os.getenv('SITE_BATCH_SIZE', '2'))
FILTER_CONCURRENCY = 5
ANALYZE_CONCURRENCY = 5
SITE_CONCURRENCY = 1
MESSAGE_CONCURRENCY = 1
SEND_DELAY_SECONDS = 4
WHATSAPP_READY_TIMEOUT = 15

# ── Rate-limit retry policy ───────────────────────────────────────────────────
RATE_LIMIT_MAX_ATTEMPTS = 3
RATE_LIMIT_SCHEDULE_MS = [30_000, 90_000, 180_000]
RATE_LIMIT_JITTER_MS = 5_000
