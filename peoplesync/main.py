"""
PeopleSync - upstream people/list mirror for multi-tenant email campaigns

FastAPI application entry point.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

# Import observability modules
from peoplesync.config import settings
from peoplesync.logging_config import configure_logging
from peoplesync.sentry_config import configure_sentry
from peoplesync.middleware.logging import LoggingMiddleware
from peoplesync.routes.metrics import router as metrics_router

# Import route modules
from peoplesync.routes.auth import router as auth_router
from peoplesync.routes.emails import router as emails_router
from peoplesync.routes.pco import router as pco_router
from peoplesync.routes.webhooks import router as webhooks_router

# Initialize logging first
configure_logging(debug=settings.DEBUG)

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Mirrors upstream people, emails and lists per organization and computes campaign recipients",
)

# Request logging and request metrics
app.add_middleware(LoggingMiddleware)

# Authlib keeps OAuth state in the session
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.JWT_SECRET_KEY,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.SITE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(metrics_router)
app.include_router(auth_router)
app.include_router(webhooks_router)
app.include_router(pco_router)
app.include_router(emails_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT
    }
