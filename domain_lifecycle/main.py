from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.domains import router as domains_router
from .config import Settings, get_settings
from .domains.manager import DomainManager
from .domains.provider import NetlifyProvider, SimulatedProvider
from .domains.reconciler import DomainReconciler
from .domains.store import DomainRecordStore
from .domains.verification import DomainVerifier

logger = logging.getLogger("domain_lifecycle")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_provider(settings: Settings):
    """Netlify when credentials are configured, otherwise the simulated provider."""
    if settings.provider_configured:
        return NetlifyProvider(
            access_token=settings.netlify_access_token,
            site_id=settings.netlify_site_id,
            api_url=settings.netlify_api_url,
            timeout=settings.provider_timeout,
            max_retries=settings.provider_max_retries,
        )
    logger.warning("Netlify credentials not configured, using simulated provider")
    return SimulatedProvider()


def build_components(settings: Settings):
    """Wire store, verifier, provider, manager and reconciler from settings."""
    store = DomainRecordStore(
        redis_url=settings.redis_url,
        key_prefix=settings.key_prefix,
        max_events_per_tenant=settings.max_events_per_tenant,
    )
    verifier = DomainVerifier(
        product=settings.product,
        edge_ipv4=settings.edge_ipv4,
        edge_target=settings.edge_target,
        timeout=settings.dns_timeout,
    )
    manager = DomainManager(
        store=store,
        verifier=verifier,
        provider=build_provider(settings),
        token_prefix=settings.token_prefix,
        reserved_domains=list(settings.reserved_domains) + [settings.edge_target],
        claim_timeout=settings.claim_timeout,
    )
    reconciler = DomainReconciler(
        manager,
        interval=settings.reconcile_interval,
        concurrency=settings.reconcile_concurrency,
        auto_provision=settings.auto_provision,
        verification_expiry_hours=settings.verification_expiry_hours,
    )
    manager.on_transient = reconciler.wake
    return store, manager, reconciler


def create_app(settings: Settings = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store, manager, reconciler = build_components(settings)
        app.state.settings = settings
        app.state.domain_store = store
        app.state.domain_manager = manager
        app.state.reconciler = reconciler
        # Pick up domains left in transient states by a previous process
        reconciler.start()
        logger.info("Domain lifecycle service started")
        try:
            yield
        finally:
            await reconciler.stop()
            await store.close()
            logger.info("Domain lifecycle service stopped")

    app = FastAPI(
        title="Domain Lifecycle Service",
        description="Custom domain verification and SSL provisioning for tenants",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(domains_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        provider = app.state.domain_manager.provider
        provider_ok, provider_message = await provider.health_check()
        return {
            "status": "ok",
            "provider": {"ok": provider_ok, "message": provider_message},
            "reconciler_running": app.state.reconciler.running,
        }

    return app


# uvicorn domain_lifecycle.main:app
app = create_app()
