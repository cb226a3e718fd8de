"""
Inbox Unsubscriber API - Main FastAPI Application
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Settings, settings
from db import AsyncSessionLocal, init_db
from gmail_client import gmail_provider_factory
from jobs import JobStore, Notifier, RetryPolicy, UnsubscribeQueue, build_notification_bus
from schemas import HealthResponse
from unsubscribe import BrowserPool, PageAnalyzer, UnsubscribeExecutor

# Load environment variables
load_dotenv()

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_TIMEOUT = 30.0


def build_queue(
    config: Settings = settings,
    session_factory: async_sessionmaker = AsyncSessionLocal,
) -> UnsubscribeQueue:
    """
    Wire the queue and its collaborators from settings.

    Browser automation is only attached when enabled and an OpenAI key is
    configured; without it confirmation pages stay NEEDS_CONFIRMATION.
    """
    executor = UnsubscribeExecutor(
        mail_provider_factory=gmail_provider_factory(session_factory),
        timeout=config.HTTP_TIMEOUT,
    )

    browser_pool = None
    if config.BROWSER_AUTOMATION_ENABLED:
        analyzer = PageAnalyzer.from_settings(config)
        if analyzer.is_available():
            browser_pool = BrowserPool.from_settings(analyzer, config)
        else:
            logger.warning("OPENAI_API_KEY not set, browser automation disabled")

    return UnsubscribeQueue(
        JobStore(session_factory),
        executor,
        Notifier(build_notification_bus(config), timeout=config.NOTIFY_TIMEOUT),
        concurrency=config.QUEUE_CONCURRENCY,
        poll_interval=config.QUEUE_POLL_INTERVAL,
        retry_policy=RetryPolicy.from_settings(config),
        browser_pool=browser_pool,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan event handler for FastAPI application.
    Handles startup and shutdown events.
    """
    logger.info("Starting up Inbox Unsubscriber API...")
    await init_db()

    queue = build_queue()
    app.state.queue = queue

    if settings.QUEUE_AUTOSTART:
        queue.start()

    yield

    logger.info("Shutting down Inbox Unsubscriber API...")
    queue.stop()
    if not await queue.drain(timeout=SHUTDOWN_DRAIN_TIMEOUT):
        in_flight = len(queue.active_job_ids) + len(queue.escalated_job_ids)
        logger.warning(f"{in_flight} job(s) still in flight at shutdown")


# Initialize FastAPI application
app = FastAPI(
    title="Inbox Unsubscriber API",
    version="1.0.0",
    description="Automated unsubscribe job pipeline for Gmail",
    lifespan=lifespan,
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.FRONTEND_URL,
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Basic error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """
    Global error handling middleware.
    Catches unhandled exceptions and returns proper JSON responses.
    """
    try:
        return await call_next(request)
    except Exception as exc:
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc) if not settings.is_production() else "An unexpected error occurred",
            },
        )


# Health check endpoint
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request) -> HealthResponse:
    """
    Health check endpoint to verify API is running.

    Returns:
        HealthResponse: Status, version and whether the queue is polling
    """
    queue = getattr(request.app.state, "queue", None)
    return HealthResponse(
        status="healthy",
        version="1.0.0",
        queue_running=bool(queue and queue.is_running),
    )


# Import routers
from routers import emails, queue as queue_router

app.include_router(queue_router.router, prefix="/api/queue", tags=["Queue"])
app.include_router(emails.router, prefix="/api/emails", tags=["Emails"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_local(),
    )
