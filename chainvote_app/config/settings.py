from pathlib import Path
import os

import environ
from django.core.exceptions import ImproperlyConfigured

BASE_DIR = Path(__file__).resolve().parent.parent

env = environ.Env(
    DEBUG=(bool, False),
)

# Optional local env file support (docker-compose already sets env vars).
environ.Env.read_env(os.path.join(BASE_DIR, ".env"))

DEBUG = env.bool("DEBUG", default=False)

SECRET_KEY = env(
    "SECRET_KEY",
    default="django-insecure-dev-only-change-me",
)
# Deployments set REQUIRE_PRODUCTION_SECRETS=1; local runs and the test suite do not.
if env.bool("REQUIRE_PRODUCTION_SECRETS", default=False) and SECRET_KEY.startswith("django-insecure-dev-only"):
    raise ImproperlyConfigured("SECRET_KEY must be set in production.")

_dev_allowed_hosts = ["localhost", "127.0.0.1", "[::1]", "testserver"]
ALLOWED_HOSTS = env.list(
    "ALLOWED_HOSTS",
    default=_dev_allowed_hosts,
)

INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'chainvote',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'config.urls'

WSGI_APPLICATION = 'config.wsgi.application'

# Database
# https://docs.djangoproject.com/en/5.0/ref/settings/#databases
DATABASES = {
    'default': {
        **env.db(
            'DATABASE_URL',
            default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}",
        ),
    }
}

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Security
# Keep these production-oriented but configurable; many deployments sit behind
# a TLS-terminating proxy/load balancer.
if not DEBUG:
    if env.bool("SECURE_PROXY_SSL", default=True):
        SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

    SESSION_COOKIE_SECURE = env.bool("SESSION_COOKIE_SECURE", default=True)
    CSRF_COOKIE_SECURE = env.bool("CSRF_COOKIE_SECURE", default=True)
    SECURE_CONTENT_TYPE_NOSNIFF = True
    SECURE_REFERRER_POLICY = env("SECURE_REFERRER_POLICY", default="same-origin")

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

AUTHENTICATION_BACKENDS = [
    'django.contrib.auth.backends.ModelBackend',
]

# Caching
# Rate limits and the ledger circuit breaker live here; use a shared backend
# (e.g. redis/memcached) when running more than one worker.
CACHES = {
    'default': env.cache('CACHE_URL', default='locmemcache://chainvote'),
}

# Ledger (JSON-RPC node + voting contract)
LEDGER_RPC_URL = env("LEDGER_RPC_URL", default=env("BLOCKCHAIN_RPC", default="http://127.0.0.1:8545"))
LEDGER_RPC_TIMEOUT_SECONDS = env.int("LEDGER_RPC_TIMEOUT_SECONDS", default=10)
LEDGER_TX_TIMEOUT_SECONDS = env.int("LEDGER_TX_TIMEOUT_SECONDS", default=120)
LEDGER_TX_POLL_INTERVAL_SECONDS = env.float("LEDGER_TX_POLL_INTERVAL_SECONDS", default=0.5)
LEDGER_READ_RETRIES = env.int("LEDGER_READ_RETRIES", default=3)
LEDGER_READ_RETRY_DELAY_SECONDS = env.float("LEDGER_READ_RETRY_DELAY_SECONDS", default=0.5)
LEDGER_CIRCUIT_BREAKER_CONSECUTIVE_FAILURES = env.int("LEDGER_CIRCUIT_BREAKER_CONSECUTIVE_FAILURES", default=3)
LEDGER_CIRCUIT_BREAKER_COOLDOWN_SECONDS = env.int("LEDGER_CIRCUIT_BREAKER_COOLDOWN_SECONDS", default=30)

# Ordered list of compiled contract artifacts to probe (Truffle / Hardhat layouts).
_repo_root = BASE_DIR.parent
LEDGER_ARTIFACT_SOURCES = env.list(
    "LEDGER_ARTIFACT_SOURCES",
    default=[
        str(_repo_root / "blockchain" / "build" / "contracts" / "Voting.json"),
        str(_repo_root / "blockchain" / "build" / "Voting.json"),
        str(_repo_root / "artifacts" / "contracts" / "Voting.sol" / "Voting.json"),
        str(_repo_root / "artifacts" / "Voting.json"),
    ],
)

# "database" keeps deployment records in ContractDeployment rows; "file" keeps
# the legacy contract-info.json next to the app.
LEDGER_DEPLOYMENT_STORE = env("LEDGER_DEPLOYMENT_STORE", default="database")
LEDGER_DEPLOYMENT_FILE = env("LEDGER_DEPLOYMENT_FILE", default=str(BASE_DIR / "deployed" / "contract-info.json"))

# Explicit deploying/finalizing identity. Empty means "first unlocked RPC account".
LEDGER_DEPLOYER_ADDRESS = env("LEDGER_DEPLOYER_ADDRESS", default="")

# Name of the contract function that anchors an election's final tally.
LEDGER_FINALIZE_FUNCTION = env("LEDGER_FINALIZE_FUNCTION", default="finalizeElection")
LEDGER_CANDIDATE_FUNCTION = env("LEDGER_CANDIDATE_FUNCTION", default="getCandidate")

# Try to deploy/verify the contract when the WSGI app starts.
LEDGER_ENSURE_DEPLOYED_ON_STARTUP = env.bool("LEDGER_ENSURE_DEPLOYED_ON_STARTUP", default=True)

# Admin re-authorization
ELECTION_RESET_CONFIRM_PHRASE = "RESET_ELECTION_CONFIRMED"
ELECTION_RESET_CODE_TTL_SECONDS = env.int("ELECTION_RESET_CODE_TTL_SECONDS", default=15 * 60)
ELECTION_ADMIN_REAUTH_RATE_LIMIT = env.int("ELECTION_ADMIN_REAUTH_RATE_LIMIT", default=5)
ELECTION_ADMIN_REAUTH_RATE_LIMIT_WINDOW_SECONDS = env.int(
    "ELECTION_ADMIN_REAUTH_RATE_LIMIT_WINDOW_SECONDS",
    default=15 * 60,
)

# Logging
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'filters': {
        'health_endpoint': {
            '()': 'config.logging_filters.HealthEndpointFilter',
        },
    },
    'formatters': {
        'console': {
            'format': '[{asctime}] {levelname} {name}: {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'console',
            'filters': ['health_endpoint'],
        },
    },
    'loggers': {
        # Our app
        'chainvote': {
            'handlers': ['console'],
            'level': 'DEBUG' if DEBUG else 'INFO',
            'propagate': False,
        },
        # web3 logs every RPC request at DEBUG.
        'web3': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
        'django.request': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
        'django.server': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
