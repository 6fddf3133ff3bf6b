from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from journey_engine.core.config import settings
from journey_engine.core.errors import JourneyValidationError
from journey_engine.core.observability import (
    http_exception_handler,
    journey_validation_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from journey_engine.db.session import engine
from journey_engine.routers import engine as engine_router
from journey_engine.routers import enrollments, events, journeys

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Journey execution engine for marketing automation.\n\n"
        "Quick test flow:\n"
        "1. `POST /journeys` with a draft definition, then `POST /journeys/{id}/publish`.\n"
        "2. `PUT /customers/{id}` to register a customer, then `POST /events` to trigger enrollment.\n"
        "3. `POST /engine/tick` to advance due enrollments and inspect `/enrollments/{id}/activity`."
    ),
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "journeys", "description": "Journey definitions, publishing, manual enrollment, and analytics."},
        {"name": "enrollments", "description": "Enrollment inspection and manual intervention."},
        {"name": "events", "description": "Customer event ingestion that drives triggers and waits."},
        {"name": "webhooks", "description": "Messaging provider delivery outcomes."},
        {"name": "customers", "description": "Customer profile upserts."},
        {"name": "engine", "description": "Synchronous engine tick for operators and tests."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(JourneyValidationError, journey_validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if (
    not allow_origin_regex
    and env_value in {"dev", "development", "staging", "stage"}
):
    # Local builder UIs run on dynamic localhost ports.
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(journeys.router)
app.include_router(enrollments.router)
app.include_router(events.router)
app.include_router(events.webhooks_router)
app.include_router(events.customers_router)
app.include_router(engine_router.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:  # noqa: BLE001
        return {"ok": False}
    return {"ok": True}
