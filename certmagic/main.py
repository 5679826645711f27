"""CertMagic - FastAPI Application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .dependencies import get_container
from .routers import certificates, challenges

log = logging.getLogger(__name__)

CURRENT_VERSION = "1.0.0"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    log.info("CertMagic %s starting (%s, %s)", CURRENT_VERSION, settings.environment, settings.directory_url)

    if settings.pending_order_max_age is not None:
        purged = get_container().pending_orders.purge_older_than(settings.pending_order_max_age)
        if purged:
            log.info("Purged %d abandoned pending order(s)", purged)

    yield


app = FastAPI(
    title="CertMagic",
    description="Let's Encrypt certificate issuance and renewal via ACME",
    version=CURRENT_VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies as {"error": ...} with 400."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else error.get("msg", ""))
    return JSONResponse(
        {"error": "Invalid request: " + "; ".join(problems), "code": "invalid_request"},
        status_code=400
    )


# Include routers
app.include_router(certificates.router)
app.include_router(challenges.router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": CURRENT_VERSION}


@app.get("/api/system/version")
async def get_version():
    """Get current application version."""
    return {"version": CURRENT_VERSION}
