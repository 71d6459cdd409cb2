import logging

from fastapi import FastAPI

from tally.core.lifecycle import reload_application_state
from tally.version import __version__


log = logging.getLogger(__name__)


def create_app():
    app = FastAPI(title="Tally")

    cfg = reload_application_state(app)
    app.state.version = __version__
    app.version = __version__

    from tally.api.routes_import import router as import_router
    from tally.api.routes_portfolio import router as portfolio_router

    app.include_router(import_router)
    app.include_router(portfolio_router)

    log.info("Tally %s ready (config=%s)", __version__, cfg.path)
    return app


app = create_app()
