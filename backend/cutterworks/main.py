import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from cutterworks.api import dashboard, orders, pickup, realtime
from cutterworks.db.session import create_tables, get_engine
from cutterworks.domain.errors import OrderError
from cutterworks.services.engine import MAX_UPLOAD_BYTES, OrderEngine
from cutterworks.services.realtime import ORDER_LIST_CHANNEL, Broadcaster
from cutterworks.services.repository import OrderRepository
from cutterworks.services.storage import UPLOAD_BASE_URL, UPLOAD_DIR, LocalBlobStore
from cutterworks.services.webhook import ORDER_WEBHOOK_URL, WebhookClient, WebhookSubscriber

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:3001").split(",") if o.strip()]


def build_order_engine() -> OrderEngine:
    db = get_engine()
    create_tables(db)
    broadcaster = Broadcaster()
    if ORDER_WEBHOOK_URL:
        broadcaster.join(WebhookSubscriber(WebhookClient()), ORDER_LIST_CHANNEL)
        logger.info("Forwarding order events to %s", ORDER_WEBHOOK_URL)
    max_bytes = int(os.getenv("MAX_UPLOAD_BYTES", str(MAX_UPLOAD_BYTES)))
    return OrderEngine(OrderRepository(db), LocalBlobStore(), broadcaster, max_upload_bytes=max_bytes)


def create_app(order_engine: Optional[OrderEngine] = None) -> FastAPI:
    app = FastAPI(title="Cookie Cutter Orders")

    # CORS for frontend dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(orders.router, prefix="", tags=["orders"])
    app.include_router(pickup.router, prefix="/pickup", tags=["pickup"])
    app.include_router(dashboard.router, prefix="/dashboard", tags=["dashboard"])
    app.include_router(realtime.router, prefix="", tags=["realtime"])
    app.mount(UPLOAD_BASE_URL, StaticFiles(directory=UPLOAD_DIR, check_dir=False), name="uploads")

    app.state.order_engine = order_engine

    @app.on_event("startup")
    def on_startup():
        if app.state.order_engine is None:
            app.state.order_engine = build_order_engine()

    @app.exception_handler(OrderError)
    async def order_error_handler(request: Request, exc: OrderError):
        logger.warning("%s %s rejected: %s %s", request.method, request.url.path, exc.kind, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "cookie-cutter-orders"}

    return app


app = create_app()
