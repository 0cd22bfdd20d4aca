import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fastcoach.db.kv_store import create_state_store
from fastcoach.routes.notifications import router as notifications_router
from fastcoach.scheduler import BehavioralNotificationScheduler, create_scheduler
from fastcoach.services.delivery import create_delivery_channel

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Application lifespan  (startup / shutdown)
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    # ── Startup ──────────────────────────────────────────────────────────────
    engine = BehavioralNotificationScheduler(create_state_store(), create_delivery_channel())
    app.state.engine = engine

    try:
        await engine.load_settings()
    except Exception as exc:
        logger.warning("Loading notification settings failed, using defaults: %s", exc)

    logger.info("Starting notification housekeeping jobs…")
    _scheduler = create_scheduler(engine)
    _scheduler.start()

    yield   # application runs here

    # ── Shutdown ─────────────────────────────────────────────────────────────
    logger.info("Shutting down notification housekeeping jobs…")
    _scheduler.shutdown(wait=False)
    await engine.drain()


app = FastAPI(
    title="FastCoach Notification Engine",
    description="Behavioral notification scheduling for the fasting companion",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(notifications_router, prefix="/notifications")


@app.get("/health")
def health_check():
    """Lightweight ping used by the app to auto-detect the backend URL."""
    return {"status": "ok"}
