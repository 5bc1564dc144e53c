"""
Main API entry point for the KrishiLink marketplace
"""
from contextlib import asynccontextmanager
import logging

from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from marketplace_api import (
    http_error_handler, marketplace_error_handler, router as marketplace_router, validation_error_handler,
)
from marketplace_errors import MarketplaceError
from marketplace_storage import (
    CropStore, connect_store, disconnect_store, firebase_credentials_configured,
    get_store, initialize_firebase, is_firebase_ready,
)

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = connect_store()
    # Token verification needs Firebase even when crops live in memory
    if not is_firebase_ready() and firebase_credentials_configured():
        initialize_firebase()
    if not is_firebase_ready():
        logger.warning("Firebase credentials not found. Running auth in development mode.")
    logger.info(f"{config.API_TITLE} started with {store.backend} store")
    yield
    disconnect_store()


app = FastAPI(title=config.API_TITLE, version=config.API_VERSION, lifespan=lifespan)

# Include marketplace API routes
app.include_router(marketplace_router, prefix="/api")

app.add_exception_handler(MarketplaceError, marketplace_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)

# Enable CORS for React frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {
        "success": True,
        "message": f"{config.API_TITLE} is running",
        "version": config.API_VERSION,
        "endpoints": {
            "crops": "/api/crops",
            "interests": "/api/interests",
        },
    }


@app.get("/api/health")
def health_check(store: CropStore = Depends(get_store)):
    """Health check endpoint"""
    try:
        store.ping()
        return {"status": "healthy", "store": store.backend}
    except MarketplaceError as e:
        logger.error(f"Health check failed: {e}")
        return {"status": "degraded", "store": store.backend, "error": e.message}
