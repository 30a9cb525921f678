import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from threatscore.config import settings
from threatscore.logging_utils import configure_logging
from threatscore.api import routes
from threatscore.services.analysis_service import AnalysisService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging()
    logger.info(f"🚀 Starting {settings.APP_NAME}...")
    # Builds and validates the weight table before any request is served
    app.state.analysis_service = AnalysisService.from_settings(settings)
    logger.info(f"✓ Signals ready (weights {app.state.analysis_service.scorer.weights.version})")
    yield
    # Shutdown
    logger.info(f"👋 Shutting down {settings.APP_NAME}...")

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(routes.router, prefix=settings.API_PREFIX, tags=["Analysis"])

@app.get("/")
def root():
    return {
        "message": f"{settings.APP_NAME} API",
        "version": settings.VERSION,
        "docs": "/docs"
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("threatscore.main:app", host="0.0.0.0", port=8000, reload=False)
