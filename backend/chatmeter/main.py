from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from chatmeter.billing import models as billing_models  # noqa: F401 - import for table creation
from chatmeter.billing.billing_router import router as billing_router
from chatmeter.billing.plans import PlanCatalog, ProductBindings
from chatmeter.chat import models as chat_models  # noqa: F401 - import for table creation
from chatmeter.chat.router import router as chat_router
from chatmeter.core.config import get_settings
from chatmeter.core.logging import RequestIdMiddleware, configure_logging
from chatmeter.database import Base, SessionLocal, engine

DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # Usage and billing responses are per-user
        if request.url.path.startswith("/api"):
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
            response.headers["Pragma"] = "no-cache"

        return response


settings = get_settings()
configure_logging(settings.env)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="Chatmeter", version="0.1.0")

# Immutable for the life of the process
app.state.plan_catalog = PlanCatalog.from_settings(settings)
app.state.product_bindings = ProductBindings.from_settings(settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins) or DEFAULT_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["x-conversation-id", "x-request-id"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIdMiddleware)

app.include_router(chat_router)
app.include_router(billing_router)


@app.get("/")
def read_root():
    return {"message": "Chatmeter", "version": "0.1.0"}


@app.get("/healthz")
def healthz():
    """Health check endpoint that verifies database connectivity."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok", "database": "connected"}
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "database": "disconnected", "error": str(exc)},
        ) from exc
    finally:
        db.close()


@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
