from contextlib import asynccontextmanager
from pathlib import Path

import conf
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from routes.base import router
from utils import log

import notifications
from models.bidding.engine import AuctionEngine
from models.bidding.events import EventBus
from models.bidding.sweeper import SettlementSweeper

log.init(conf.get_log_level(), conf.get_environment())
logger = log.get_logger(__name__)


async def build_engine() -> AuctionEngine:
    """Wire the engine to the configured store backend."""
    store = conf.get_auction_store()
    if store == "memory":
        from models.bidding.memory import InMemoryAuctionRepository, InMemoryBidLedger

        logger.warning("Using the in-memory auction store; data is lost on restart")
        repository, ledger = InMemoryAuctionRepository(), InMemoryBidLedger()
    else:
        from clients.couchbase import check_connection
        from models.operations.auctions import CouchbaseAuctionRepository
        from models.operations.bids import CouchbaseBidLedger

        logger.info("Verifying Couchbase connection...")
        await check_connection()
        logger.info("Couchbase connection verified.")
        repository, ledger = CouchbaseAuctionRepository(), CouchbaseBidLedger()

    events = EventBus()
    notifications.register(events)
    return AuctionEngine(repository, ledger, events=events, settings=conf.get_engine_settings())


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.engine = await build_engine()

    # Initialize auth client if enabled
    if conf.USE_AUTH:
        from utils import auth

        app.state.auth_client = auth.AuthClient(conf.get_auth_config())
    else:
        logger.warning("Authentication is disabled (set USE_AUTH to enable)")

    sweeper_conf = conf.get_sweeper_conf()
    sweeper = SettlementSweeper(app.state.engine, batch_size=sweeper_conf.batch_size)
    sweeper.start(sweeper_conf.interval_seconds)

    yield

    sweeper.shutdown()


app = FastAPI(
    title="Auction API",
    version="0.1.0",
    docs_url="/docs",
    lifespan=lifespan,
    debug=conf.get_http_expose_errors(),
)

app.include_router(router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not conf.validate():
    raise ValueError("Invalid configuration.")

http_conf = conf.get_http_conf()
logger.info(f"Starting API on port {http_conf.port}")

logger.info("--- Registered Routes ---")
for route in app.routes:
    methods_set = getattr(route, "methods", None)
    methods = ", ".join(methods_set) if methods_set else "Any"
    path = getattr(route, "path", "<unknown>")
    logger.info(f"{path} [{methods}]")
logger.info("-------------------------")

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=http_conf.host,
        port=http_conf.port,
        reload=http_conf.autoreload,
        log_level="info",
        reload_dirs=[str(Path(__file__).parent), "/models", "/clients"],
        log_config=None,
    )
