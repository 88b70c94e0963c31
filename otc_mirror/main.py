import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException

from otc_mirror.config import settings
from otc_mirror.db import close_pool, get_pool, init_schema
from otc_mirror.metrics import get_metrics_bytes, get_metrics_content_type
from otc_mirror.prices import ChainlinkFeedReader, PriceCache
from otc_mirror.redis_client import close_redis, get_redis
from otc_mirror.routes import admin, auth, orders, prices

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


def build_price_cache(r) -> PriceCache:
    reader = None
    if settings.rpc_url:
        reader = ChainlinkFeedReader(
            settings.rpc_url,
            {
                "WBTC": settings.wbtc_usd_feed,
                "WETH": settings.weth_usd_feed,
                "USDT": settings.usdt_usd_feed,
                "USDC": settings.usdc_usd_feed,
            },
        )
    else:
        logger.info("RPC_URL not set; /api/prices serves fallback prices")
    return PriceCache(reader, r, ttl_seconds=settings.price_cache_ttl_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    pool = await get_pool()
    await init_schema(pool)
    app.state.price_cache = build_price_cache(await get_redis())
    logger.info("Schema ready. Serving OTC order mirror.")
    yield
    await close_redis()
    await close_pool()


app = FastAPI(title="OTC Order Mirror", lifespan=lifespan)
app.include_router(auth.router)
app.include_router(orders.router)
app.include_router(admin.router)
app.include_router(prices.router)


def validation_message(errors: list[dict]) -> str:
    """First failing field as "Invalid <field>"; any absent field wins over bad values."""
    if any(e["type"] == "missing" for e in errors):
        return "Missing required fields"
    for error in errors:
        fields = [part for part in error["loc"][1:] if isinstance(part, str)]
        if fields:
            return f"Invalid {fields[0]}"
    return "Invalid request body"


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = validation_message(exc.errors())
    logger.info("Rejected %s %s: %s", request.method, request.url.path, message)
    return JSONResponse(status_code=400, content={"success": False, "error": message})


@app.exception_handler(HTTPException)
async def http_error(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: order transitions, rejections, conflicts, price cache."""
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
