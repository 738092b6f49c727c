from fastapi import FastAPI, Depends, Request, BackgroundTasks, Body
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from starlette.concurrency import run_in_threadpool
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager
import logging

from . import __version__
from .auth import get_cache, get_keystore, require_key
from .billing import BillingEventHandler, create_checkout_session
from .config import Settings, configure_logging, get_settings
from .errors import ValidationFailed, register_error_handlers
from .keystore import KeyStore
from .models import AlertSubscribeRequest, CheckoutRequest, KeyRecord, KeyVerifyResponse
from .notify import send_key_email
from .scheduler import RefreshScheduler
from .signals import signal_from_score, what_changed
from .snapshot import SnapshotCache

logger = logging.getLogger(__name__)

API_VERSION = "v1"

PUBLIC_ENDPOINTS = [
    "/health",
    "/public/index",
    "/v1/index",
    "/v1/history",
    "/v1/markets",
    "/v1/drivers",
    "/v1/key/verify",
    "/v1/alerts/subscribe",
    "/v1/checkout",
    "/v1/webhook",
    "/v1/billing/readiness",
]


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def create_app(
    settings: Optional[Settings] = None,
    keystore: Optional[KeyStore] = None,
    cache: Optional[SnapshotCache] = None,
    scheduler: Optional[RefreshScheduler] = None,
) -> FastAPI:
    """Build the API with its own cache, key store and refresh scheduler."""
    settings = settings or get_settings()
    keystore = keystore or KeyStore(settings.db_path)
    keystore.init_db()
    cache = cache or SnapshotCache()
    scheduler = scheduler or RefreshScheduler(cache, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        if settings.scheduler_enabled:
            scheduler.start()
        yield
        # Shutdown
        await scheduler.stop()

    app = FastAPI(
        title="ICI API",
        description="Investment Climate Index - snapshot, markets and API key gateway",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.keystore = keystore
    app.state.snapshot_cache = cache
    app.state.scheduler = scheduler
    app.state.billing = BillingEventHandler(keystore, settings.stripe_webhook_secret)

    # Middleware
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    # Endpoints
    @app.get("/", tags=["General"])
    def root():
        """API root with basic info."""
        return {
            "name": "ICI API",
            "version": __version__,
            "docs": "/docs",
            "endpoints": PUBLIC_ENDPOINTS,
        }

    @app.get("/health", tags=["General"])
    def health_check():
        return {"ok": True}

    @app.get("/public/index", tags=["Index"])
    def public_index(cache: SnapshotCache = Depends(get_cache)):
        """Full snapshot with signal and freshness, no key required."""
        snapshot = cache.require()
        return {
            **snapshot.document,
            "signal": signal_from_score(snapshot.score),
            "dataUpdatedAt": snapshot.base_updated_at,
            "marketsUpdatedAt": snapshot.markets_updated_at,
        }

    @app.get("/v1/index", tags=["Index"])
    def get_index(key: KeyRecord = Depends(require_key), cache: SnapshotCache = Depends(get_cache)):
        document = cache.require().document
        return {
            "version": API_VERSION,
            "updatedAt": document.get("updatedAt"),
            "score": document.get("score"),
            "signal": signal_from_score(document.get("score")),
            "dca": document.get("dca"),
            "whatChanged": what_changed(document),
            "drivers": document.get("drivers"),
            "markets": document.get("markets"),
        }

    @app.get("/v1/history", tags=["Index"])
    def get_history(key: KeyRecord = Depends(require_key), cache: SnapshotCache = Depends(get_cache)):
        document = cache.require().document
        return {"version": API_VERSION, "history": document.get("history"), "dcaHistory": document.get("dcaHistory")}

    @app.get("/v1/markets", tags=["Index"])
    def get_markets(key: KeyRecord = Depends(require_key), cache: SnapshotCache = Depends(get_cache)):
        document = cache.require().document
        return {"version": API_VERSION, "markets": document.get("markets")}

    @app.get("/v1/drivers", tags=["Index"])
    def get_drivers(key: KeyRecord = Depends(require_key), cache: SnapshotCache = Depends(get_cache)):
        document = cache.require().document
        return {"version": API_VERSION, "drivers": document.get("drivers"), "whatChanged": what_changed(document)}

    @app.get("/v1/key/verify", response_model=KeyVerifyResponse, tags=["Keys"])
    def verify_key(key: KeyRecord = Depends(require_key)):
        return KeyVerifyResponse(status=key.status, plan=key.plan, email=key.email)

    @app.post("/v1/alerts/subscribe", tags=["Alerts"])
    def subscribe_alerts(
        payload: Optional[AlertSubscribeRequest] = Body(None),
        key: KeyRecord = Depends(require_key),
        keystore: KeyStore = Depends(get_keystore),
    ):
        payload = payload or AlertSubscribeRequest()
        email = (payload.email or "").strip() or None
        chat_id = str(payload.telegram_chat_id).strip() if payload.telegram_chat_id is not None else None
        if not email and not chat_id:
            raise ValidationFailed("Provide email or telegramChatId")
        keystore.add_alert(key.id, email, chat_id or None)
        return {"ok": True}

    @app.post("/v1/checkout", tags=["Billing"])
    def checkout(
        payload: Optional[CheckoutRequest] = Body(None),
        settings: Settings = Depends(get_app_settings),
    ):
        email = payload.email if payload else None
        return {"url": create_checkout_session(settings, email)}

    @app.get("/v1/billing/readiness", tags=["Billing"])
    def billing_readiness(
        settings: Settings = Depends(get_app_settings),
        keystore: KeyStore = Depends(get_keystore),
    ) -> Dict[str, Any]:
        return {**settings.billing_readiness(), "keys": keystore.stats()}

    @app.post("/v1/webhook", tags=["Billing"])
    async def stripe_webhook(request: Request, background_tasks: BackgroundTasks):
        payload_bytes = await request.body()
        handler: BillingEventHandler = request.app.state.billing
        event = handler.verify(payload_bytes, request.headers.get("Stripe-Signature"))
        outcome = await run_in_threadpool(handler.handle, event)

        minted = outcome.minted
        if minted is not None and minted.record.email and settings.mailer_url:
            background_tasks.add_task(send_key_email, settings.mailer_url, minted.record.email, minted.api_key)
        return {"received": True}

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("API server listening on %s", settings.port)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
