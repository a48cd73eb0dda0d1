"""Tutoring scheduler API entry point.

Run with:
    uvicorn tutoring_scheduler.main:app --reload
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from tutoring_scheduler.api.v1.api import api_router
from tutoring_scheduler.core.config import Settings, settings
from tutoring_scheduler.core.database import build_engine, create_session_factory, init_models
from tutoring_scheduler.core.logging_config import configure_logging
from tutoring_scheduler.services.booking_coordinator import BookingCoordinator
from tutoring_scheduler.services.scheduling_service import SchedulingService
from tutoring_scheduler.services.sql_stores import SqlCourseTutorStore, SqlSessionStore, SqlTemplateStore

logger = logging.getLogger(__name__)


def _sql_lifespan(app_settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = build_engine(app_settings.DATABASE_URL, echo=app_settings.DEBUG)
        await init_models(engine)
        session_factory = create_session_factory(engine)

        template_store = SqlTemplateStore(
            session_factory,
            default_timezone=app_settings.INSTITUTION_TIMEZONE,
            timeout_seconds=app_settings.STORE_TIMEOUT_SECONDS,
        )
        session_store = SqlSessionStore(
            session_factory,
            timeout_seconds=app_settings.STORE_TIMEOUT_SECONDS,
            cas_attempts=app_settings.COMMIT_CAS_ATTEMPTS,
        )
        course_tutor_store = SqlCourseTutorStore(session_factory, timeout_seconds=app_settings.STORE_TIMEOUT_SECONDS)

        app.state.scheduling_service = SchedulingService(
            template_store, session_store, course_tutor_store, app_settings
        )
        app.state.booking_coordinator = BookingCoordinator(
            template_store, session_store, course_tutor_store, app_settings
        )
        logger.info(f"Database initialized: {app_settings.DATABASE_URL}")

        yield

        await engine.dispose()
        logger.info("Database connections closed")

    return lifespan


def create_app(
    app_settings: Optional[Settings] = None,
    scheduling_service: Optional[SchedulingService] = None,
    booking_coordinator: Optional[BookingCoordinator] = None,
) -> FastAPI:
    """Build the API. Services passed in are used as-is and skip the database setup."""
    app_settings = app_settings or settings
    configure_logging(app_settings.LOG_LEVEL)

    lifespan = None
    if scheduling_service is None or booking_coordinator is None:
        lifespan = _sql_lifespan(app_settings)

    app = FastAPI(title=app_settings.APP_NAME, version=app_settings.APP_VERSION, lifespan=lifespan)
    if lifespan is None:
        app.state.scheduling_service = scheduling_service
        app.state.booking_coordinator = booking_coordinator

    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": app_settings.APP_NAME}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tutoring_scheduler.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
