from pydantic import BaseModel

from models.bidding.engine import EngineSettings
from utils import auth, env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

# Set to True to enable authentication
USE_AUTH = True

#### Types ####

class HttpServerConf(BaseModel):
    host: str
    port: int
    autoreload: bool

class SweeperConf(BaseModel):
    interval_seconds: float
    batch_size: int

#### Env Vars ####

## Auth ##

AUTH_OIDC_JWK_URL = EnvVarSpec(id="AUTH_OIDC_JWK_URL", is_optional=True)
AUTH_OIDC_AUDIENCE = EnvVarSpec(id="AUTH_OIDC_AUDIENCE", is_optional=True)
AUTH_OIDC_ISSUER = EnvVarSpec(id="AUTH_OIDC_ISSUER", is_optional=True)

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

ENVIRONMENT = EnvVarSpec(id="ENVIRONMENT", default="development")

## HTTP ##

HTTP_HOST = EnvVarSpec(id="HTTP_HOST", default="0.0.0.0")

HTTP_PORT = EnvVarSpec(id="HTTP_PORT", default="8000", parse=int, type=(int, ...))

HTTP_AUTORELOAD = EnvVarSpec(
    id="HTTP_AUTORELOAD",
    parse=lambda x: x.lower() == "true",
    default="false",
    type=(bool, ...),
)

HTTP_EXPOSE_ERRORS = EnvVarSpec(
    id="HTTP_EXPOSE_ERRORS",
    default="false",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

## Bidding ##

AUCTION_STORE = EnvVarSpec(
    id="AUCTION_STORE",
    default="couchbase",
    parse=lambda x: x.strip().lower(),
)

BID_MAX_RETRIES = EnvVarSpec(id="BID_MAX_RETRIES", default="3", parse=int, type=(int, ...))

BID_RETRY_BACKOFF_MS = EnvVarSpec(id="BID_RETRY_BACKOFF_MS", default="10", parse=int, type=(int, ...))

STORE_TIMEOUT_SECONDS = EnvVarSpec(
    id="STORE_TIMEOUT_SECONDS",
    default="5.0",
    parse=float,
    type=(float, ...),
)

## Settlement sweeper ##

SETTLEMENT_SWEEP_INTERVAL_SECONDS = EnvVarSpec(
    id="SETTLEMENT_SWEEP_INTERVAL_SECONDS",
    default="30",
    parse=float,
    type=(float, ...),
)

SETTLEMENT_SWEEP_BATCH_SIZE = EnvVarSpec(
    id="SETTLEMENT_SWEEP_BATCH_SIZE",
    default="100",
    parse=int,
    type=(int, ...),
)

STORE_BACKENDS = ("couchbase", "memory")

#### Validation ####
VALIDATED_ENV_VARS = [
    HTTP_AUTORELOAD,
    HTTP_EXPOSE_ERRORS,
    HTTP_PORT,
    LOG_LEVEL,
    ENVIRONMENT,
    AUCTION_STORE,
    BID_MAX_RETRIES,
    BID_RETRY_BACKOFF_MS,
    STORE_TIMEOUT_SECONDS,
    SETTLEMENT_SWEEP_INTERVAL_SECONDS,
    SETTLEMENT_SWEEP_BATCH_SIZE,
]

# Only validate auth vars if USE_AUTH is True
if USE_AUTH:
    VALIDATED_ENV_VARS.extend([
        AUTH_OIDC_JWK_URL,
        AUTH_OIDC_AUDIENCE,
        AUTH_OIDC_ISSUER,
    ])

def validate() -> bool:
    if not env.validate(VALIDATED_ENV_VARS):
        return False
    if get_auction_store() not in STORE_BACKENDS:
        logger.error(f"AUCTION_STORE must be one of {STORE_BACKENDS}, got {get_auction_store()!r}")
        return False
    return True

#### Getters ####

def get_auth_config() -> auth.AuthClientConfig:
    """Get authentication configuration."""
    return auth.AuthClientConfig(
        jwk_url=env.parse(AUTH_OIDC_JWK_URL),
        audience=env.parse(AUTH_OIDC_AUDIENCE),
        issuer=env.parse(AUTH_OIDC_ISSUER),
    )

def get_http_expose_errors() -> bool:
    return env.parse(HTTP_EXPOSE_ERRORS)

def get_log_level() -> str:
    return env.parse(LOG_LEVEL)

def get_environment() -> str:
    return env.parse(ENVIRONMENT)

def get_http_conf() -> HttpServerConf:
    return HttpServerConf(
        host=env.parse(HTTP_HOST),
        port=env.parse(HTTP_PORT),
        autoreload=env.parse(HTTP_AUTORELOAD),
    )

def get_auction_store() -> str:
    return env.parse(AUCTION_STORE)

def get_engine_settings() -> EngineSettings:
    return EngineSettings(
        max_retries=max(0, env.parse(BID_MAX_RETRIES)),
        retry_backoff_ms=max(0, env.parse(BID_RETRY_BACKOFF_MS)),
        store_timeout_seconds=env.parse(STORE_TIMEOUT_SECONDS),
    )

def get_sweeper_conf() -> SweeperConf:
    return SweeperConf(
        interval_seconds=max(1.0, env.parse(SETTLEMENT_SWEEP_INTERVAL_SECONDS)),
        batch_size=max(1, env.parse(SETTLEMENT_SWEEP_BATCH_SIZE)),
    )
