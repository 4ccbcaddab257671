"""
FastAPI server for the OTC payments feed
Creates the schema on startup, wires the services and maps OTCError to HTTP
responses.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from config import Config
from database import create_tables, engine
from routes.otc_routes import router as otc_router
from services.notification_service import NotificationSink
from services.service_registry import build_services
from utils.otc_errors import OTCError

logger = logging.getLogger(__name__)


def create_app(session_factory: Optional[sessionmaker] = None,
               sink: Optional[NotificationSink] = None,
               create_schema: bool = True) -> FastAPI:
    """
    Build the application.

    Args:
        session_factory: Sessions for every service, SessionLocal when omitted
        sink: Notification delivery, the in-app inbox when omitted
        create_schema: Create missing tables on startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Config.log_environment_config()
        if create_schema:
            bind = session_factory.kw.get("bind") if session_factory is not None else engine
            if not create_tables(bind):
                raise RuntimeError("Database schema could not be created")
        logger.info("🚀 OTC feed API ready")
        yield
        logger.info("🔄 OTC feed API shutting down")

    app = FastAPI(
        title="OTC Payments Feed API",
        description="Payments feed with escrow-backed USDT/fiat OTC trades",
        lifespan=lifespan,
    )
    app.state.services = build_services(session_factory, sink)

    @app.exception_handler(OTCError)
    async def handle_otc_error(request: Request, exc: OTCError):
        log = logger.error if exc.http_status >= 500 else logger.info
        log(f"⚠️ REQUEST_REJECTED: {request.method} {request.url.path} -> {exc.http_status} {exc.code}: {exc.message}")
        return JSONResponse(content=exc.to_dict(), status_code=exc.http_status)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error(f"❌ UNHANDLED_ERROR: {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            content={"error": "INTERNAL_ERROR", "message": "Internal server error", "retryable": True},
            status_code=500,
        )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "otc-payments-feed"}

    app.include_router(otc_router)
    return app


def main():
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(create_app(), host=Config.API_HOST, port=Config.API_PORT)


if __name__ == "__main__":
    main()
