from opentelemetry.instrumentation import auto_instrumentation

auto_instrumentation.initialize()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi_errors_rfc9457 import RFC9457Config, setup_rfc9457_handlers

# Import automatique des handlers d'événements (paiement, orientation)
import app.events
from app.api.v1 import api as api_v1
from app.core.config import settings
from app.core.database import create_db_and_tables
from app.core.events import lifespan as events_lifespan

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Gère le cycle de vie de l'application:
    - Crée les tables de base de données.
    - Initialise Redis Pub/Sub et démarre les consommateurs d'événements.
    - Arrête proprement les consommateurs à l'arrêt.
    """
    logger.info("=== Application Startup ===")

    await create_db_and_tables()
    logger.info("Tables de base de données créées")

    async with events_lifespan(app):
        logger.info("=== Application Startup Complete ===")
        try:
            yield
        finally:
            logger.info("=== Application Shutdown ===")


OPENAPI_TAGS = [
    {"name": "health", "description": "Disponibilité du service et de PostgreSQL"},
    {
        "name": "applications",
        "description": "Cycle de vie côté demandeur: brouillon, pièces, soumission, annulation",
    },
    {"name": "renewals", "description": "Éligibilité et création des renouvellements"},
    {
        "name": "reviews",
        "description": "Verdicts des agents, validation du paiement, décision finale, notifications",
    },
]

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description=settings.DESCRIPTION,
    lifespan=lifespan,
    openapi_url=f"{settings.get_api_prefix()}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Exception handlers RFC 9457 Problem Details
config_rfc9457 = RFC9457Config(
    base_url="about:blank",  # Auto-detect request domain
    include_trace_id=True,  # Include OpenTelemetry trace_id
    expose_internal_errors=settings.DEBUG,
    include_error_pages=False,
)
setup_rfc9457_handlers(app, config=config_rfc9457)

# Middleware CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin) for origin in settings.ALLOWED_ORIGINS],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware Trusted Hosts
if settings.ENVIRONMENT != "development":
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=settings.TRUSTED_HOSTS,
    )

app.include_router(api_v1.router, prefix=settings.get_api_prefix("v1"))
