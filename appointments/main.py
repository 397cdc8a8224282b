import logging

from fastapi import FastAPI
from redis.exceptions import RedisError

from .config import settings
from .database import SessionLocal
from .redis_client import redis_client
from .routers import availability, bookings, calendar
from .services.calendars import default_adapters
from .services.sync import SyncOrchestrator
from .services.tokens import TokenLifecycleManager

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Appointments API")

adapters = default_adapters()
token_manager = TokenLifecycleManager(SessionLocal, adapters)

app.state.adapters = adapters
app.state.token_manager = token_manager
app.state.orchestrator = SyncOrchestrator(SessionLocal, token_manager, adapters)

app.include_router(availability.router)
app.include_router(bookings.router)
app.include_router(calendar.router)


@app.get("/health")
def health():
    try:
        redis_ok = redis_client.ping()
    except RedisError:
        logger.warning("Redis ping failed")
        redis_ok = False
    return {"status": "ok", "redis": redis_ok}
