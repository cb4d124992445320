from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shopfloor.api.routes import router as api_router
from shopfloor.config.settings import get_settings
from shopfloor.storage.database import init_db
from shopfloor.utils.logging_config import setup_logging
from shopfloor.utils.timezone import get_converter


logger = setup_logging()
settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    description="Machine and operator scheduling with a timezone-aware Gantt timeline",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting {settings.app_name}...")
    init_db()
    logger.info("Database initialized")
    logger.info(f"Display timezone: {get_converter().label}")
    logger.info(
        f"Search horizon: {settings.search_horizon_days} day(s), "
        f"workday {settings.workday_start_hour}:00-{settings.workday_end_hour}:00, "
        f"step {settings.slot_granularity_minutes}m"
    )


@app.on_event("shutdown")
async def shutdown_event():
    logger.info(f"Shutting down {settings.app_name}...")

app.include_router(api_router, prefix="/api/v1", tags=["scheduling"])


@app.get("/health", tags=["health"])
def health_check():
    """Health check endpoint for monitoring and load balancers."""
    return {"status": "ok", "app": settings.app_name, "version": "1.0.0"}
