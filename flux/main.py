import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from flux.config import settings
from flux.db import PostgresStore, close_pool, get_pool, init_schema
from flux.dispatch import DirectDispatcher, QueueDispatcher
from flux.engine import OrderEngine
from flux.errors import FluxError, InvalidInputError
from flux.messaging import build_gateway
from flux.metrics import get_metrics_bytes, get_metrics_content_type, sqs_queue_messages_in_flight, sqs_queue_messages_waiting
from flux.realtime import InMemoryBroker, RedisBroker
from flux.redis_client import close_redis, get_redis
from flux.routes import admin, deliveries, orders, profiles
from flux.sqs_client import get_queue_depth
from flux.store import MemoryStore

logger = logging.getLogger(__name__)


async def build_engine() -> OrderEngine:
    gateway = build_gateway()
    if settings.store_backend == "memory":
        logger.info("Backend=memory. State is lost on restart.")
        return OrderEngine(MemoryStore(), DirectDispatcher(gateway), InMemoryBroker(), gateway)
    pool = await get_pool()
    await init_schema(pool)
    r = await get_redis()
    return OrderEngine(PostgresStore(pool), QueueDispatcher(r), RedisBroker(r), gateway)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    engine = await build_engine()
    app.state.engine = engine
    yield
    aclose = getattr(engine.gateway, "aclose", None)
    if aclose is not None:
        await aclose()
    if settings.store_backend != "memory":
        await close_pool()
        await close_redis()


app = FastAPI(title="FLUX Orders", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(deliveries.router)
app.include_router(profiles.router)
app.include_router(admin.router)


@app.exception_handler(FluxError)
async def flux_error_handler(request: Request, exc: FluxError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies answer in the same {error, message} shape as domain errors."""
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first["loc"] if part != "body")
    message = first["msg"].removeprefix("Value error, ")
    error = InvalidInputError(f"{field}: {message}" if field else message)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: order transitions, code validations, SQS queue depth (when using SQS)."""
    if settings.sqs_queue_url:
        try:
            waiting, in_flight = await get_queue_depth()
            sqs_queue_messages_waiting.set(waiting)
            sqs_queue_messages_in_flight.set(in_flight)
        except Exception:
            logger.warning("Could not read SQS queue depth", exc_info=True)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
