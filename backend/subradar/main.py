from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging
import os

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from subradar.database import engine, Base
from subradar.exceptions import SubscriptionDetectionError
from subradar.routes import api_router

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "y", "on")


# Guarded dev helper (prefer running migrations)
if _env_bool("AUTO_CREATE_TABLES", default=False):
    logger.warning("AUTO_CREATE_TABLES is enabled; creating tables via SQLAlchemy metadata.")
    Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Subradar API",
    description="Recurring charge detection and merchant resolution",
    version="0.1.0",
    docs_url="/docs" if _env_bool("API_DOCS_ENABLED", default=False) else None,
    redoc_url="/redoc" if _env_bool("API_DOCS_ENABLED", default=False) else None,
    openapi_url="/openapi.json" if _env_bool("API_DOCS_ENABLED", default=False) else None,
)


@app.exception_handler(SubscriptionDetectionError)
async def detection_error_handler(request: Request, exc: SubscriptionDetectionError):
    logger.error(
        f"Detection failed on {request.url.path}: {exc.error_code} {exc.details}"
    )
    return JSONResponse(
        status_code=503,
        content={"error_code": exc.error_code, "message": exc.user_message},
    )


app.include_router(api_router, prefix="/api")


@app.get("/")
def root():
    payload = {"message": "Subradar API"}
    if _env_bool("API_DOCS_ENABLED", default=False):
        payload["docs"] = "/docs"
    return payload


@app.get("/health")
def health():
    return {"status": "healthy"}
