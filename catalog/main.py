# catalog/main.py
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from .audit import SqlAuditLogger
from .cache import build_cache
from .config import Settings
from .db import init_schema, make_engine, make_session_factory
from .dispatch import BackgroundDispatcher, InlineDispatcher
from .errors import CatalogError
from .notifications import SqlNotifier
from .scheduler import build_scheduler
from .utils import logger


def create_app(
    settings: Settings = None,
    session_factory=None,
    cache=None,
    audit=None,
    notifier=None,
    dispatcher=None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Build the HTTP app. Collaborators not passed in are created on startup."""
    settings = settings or Settings.from_env()
    app = FastAPI(title="Property Catalog")
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.cache = cache or build_cache(settings)
    app.state.audit = audit
    app.state.notifier = notifier
    app.state.dispatcher = dispatcher
    app.state.scheduler = None

    from .api.routes import router as api_router
    app.include_router(api_router)

    @app.exception_handler(CatalogError)
    def handle_catalog_error(request: Request, exc: CatalogError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})

    @app.on_event("startup")
    def on_startup():
        state = app.state
        if state.session_factory is None:
            engine = make_engine(settings.require_database_url(), settings)
            init_schema(engine)
            state.session_factory = make_session_factory(engine)
        if state.audit is None:
            state.audit = SqlAuditLogger(state.session_factory)
        if state.notifier is None:
            state.notifier = SqlNotifier(state.session_factory)

        if start_scheduler:
            state.scheduler = build_scheduler(settings, state.session_factory)
            state.scheduler.start()
            logger.info("Scheduler started")
        if state.dispatcher is None:
            if settings.background_side_effects and state.scheduler is not None:
                state.dispatcher = BackgroundDispatcher(
                    state.scheduler, settings.side_effect_tries, settings.side_effect_delay_seconds
                )
            else:
                state.dispatcher = InlineDispatcher(settings.side_effect_tries, settings.side_effect_delay_seconds)

    @app.on_event("shutdown")
    def on_shutdown():
        if app.state.scheduler is not None:
            app.state.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    return app


app = create_app()
