import logging
from contextlib import asynccontextmanager

import uvicorn
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from auth import auth_router
from config import settings as default_settings
from database import init_db
from errors import register_exception_handlers
from ratelimit import build_rate_limiter
from router import router

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}


async def add_security_headers(request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


def create_app(settings=None, limiter=None):
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level)
    limiter = limiter or build_rate_limiter(settings)

    @asynccontextmanager
    async def lifespan(app):
        init_db()
        # Sweep expired rate-limit windows so idle keys don't pile up
        scheduler = BackgroundScheduler()
        scheduler.add_job(
            limiter.prune, "interval", seconds=settings.rate_limit_prune_seconds
        )
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info("Rate limit pruning every %ss", settings.rate_limit_prune_seconds)
        try:
            yield
        finally:
            scheduler.shutdown(wait=False)

    app = FastAPI(title="Expense Tracker API", lifespan=lifespan)
    app.state.limiter = limiter

    register_exception_handlers(app)

    # Added last means outermost: rate limiter, then CORS, then headers.
    app.middleware("http")(add_security_headers)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(limiter)

    prefix = settings.api_prefix.rstrip("/")
    app.include_router(router, prefix=prefix, tags=["expenses"])
    app.include_router(auth_router, prefix=f"{prefix}/users", tags=["users"])

    @app.get("/")
    def home():
        return {"message": "Expense Tracker API is running"}

    @app.get(f"{prefix}/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host=default_settings.host, port=default_settings.port)
