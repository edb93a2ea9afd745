import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coldroom.config import settings
from coldroom.database import create_tables
from coldroom.middleware.exceptions import register_exception_handlers
from coldroom.routers import cold_room, counting, health, loading, pallets
from coldroom.utils.cache import close_redis

logger = logging.getLogger("coldroom")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables in development; release Redis on shutdown."""
    if settings.auto_create_tables:
        await create_tables()
        logger.info("Database tables ensured")
    try:
        yield
    finally:
        await close_redis()


app = FastAPI(
    title="Cold Room",
    description="Cold-room loading, balance tracking & pallet consolidation",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(counting.router, prefix="/api/counting-records", tags=["counting"])
app.include_router(loading.router, prefix="/api/loading", tags=["loading"])
app.include_router(cold_room.router, prefix="/api/cold-room", tags=["cold-room"])
app.include_router(pallets.router, prefix="/api/pallets", tags=["pallets"])
