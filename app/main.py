import logging
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Deque

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.core.errors import JobNotFound
from app.core.logging import configure_logging
from app.db.base import Base
from app.db.session import engine
from app.routers import agents, jobs, rankings

logger = logging.getLogger(__name__)

# Pollers hit status endpoints every few seconds; only writes count against the limit.
RATE_LIMITED_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class RateLimiter:
    """Sliding one-minute window per client address."""

    def __init__(self, limit_per_minute: int) -> None:
        self.limit_per_minute = limit_per_minute
        self._hits: dict[str, Deque[float]] = defaultdict(deque)

    def hit(self, key: str) -> bool:
        now = datetime.now(timezone.utc).timestamp()
        bucket = self._hits[key]
        while bucket and bucket[0] < now - 60:
            bucket.popleft()
        if len(bucket) >= self.limit_per_minute:
            return False
        bucket.append(now)
        return True


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title=settings.app_name, debug=settings.debug)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    limiter = RateLimiter(settings.rate_limit_per_minute)

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        if request.method in RATE_LIMITED_METHODS:
            key = request.client.host if request.client else "unknown"
            if not limiter.hit(key):
                logger.warning("rate_limited", extra={"client": key, "path": request.url.path})
                return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content={"detail": "Rate limit exceeded"})
        return await call_next(request)

    @app.exception_handler(JobNotFound)
    async def job_not_found_handler(request: Request, exc: JobNotFound) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": f"Job not found: {exc}"})

    app.include_router(jobs.router)
    app.include_router(agents.router)
    app.include_router(rankings.router)

    @app.on_event("startup")
    def startup() -> None:
        if settings.auto_create_tables:
            Base.metadata.create_all(bind=engine)
        logger.info("app_started", extra={"environment": settings.environment, "eager": settings.celery_task_always_eager})

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "environment": settings.environment}

    return app


app = create_app()
