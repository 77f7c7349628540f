"""
FastAPI application hosting the certificate endpoints.

The manager is started and stopped with the application so the
challenge route, sweepers and renewal loop share one event loop.
"""
import contextlib
import logging
from typing import Optional

from fastapi import FastAPI

from .manager import CertificateManager, get_certificate_manager, set_certificate_manager
from .routes import router


logger = logging.getLogger(__name__)


def create_app(manager: Optional[CertificateManager] = None) -> FastAPI:
    """
    Create the application.

    Args:
        manager: Manager to install as the global instance (defaults to one
            built from the loaded settings)
    """
    if manager is not None:
        set_certificate_manager(manager)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        active = get_certificate_manager()
        await active.start()
        try:
            yield
        finally:
            await active.stop()

    app = FastAPI(title="autocert", lifespan=lifespan)
    app.include_router(router)
    return app
