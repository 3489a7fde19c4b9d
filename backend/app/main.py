import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from config import settings
from models import async_session, engine
from api.attachments import router as attachments_router
from api.products import router as products_router
from services.product_sync import ProductSyncModule

APP_VERSION = "0.1.0"

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("prodhub.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Product admin backend starting... DEBUG=%s", settings.DEBUG)

    redis = Redis.from_url(settings.REDIS_URL, decode_responses=False)
    app.state.redis = redis

    product_sync = ProductSyncModule(redis, async_session)
    app.state.product_sync = product_sync
    await product_sync.start()

    yield

    # Shutdown
    logger.info("Product admin backend shutting down...")
    await product_sync.stop()
    await redis.aclose()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Product Admin API",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(products_router)
app.include_router(attachments_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": APP_VERSION}
