import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from tabapp.auth import default_authorizer
from tabapp.config import settings
from tabapp.db import SessionLocal
from tabapp.errors import InternalError, ServiceError
from tabapp.routers import tabs
from tabapp.security.sessions import install_auth_session_middleware

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def create_app(session_factory: sessionmaker = SessionLocal) -> FastAPI:
    app = FastAPI(title='Tab Billing')
    app.state.authorizer = default_authorizer

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if isinstance(exc, InternalError):
            logger.error('Internal error on %s %s', request.method, request.url.path, exc_info=exc)
        content = {'detail': exc.message}
        if exc.details is not None:
            content['errors'] = exc.details
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(content))

    install_auth_session_middleware(app, session_factory)
    app.include_router(tabs.router)

    @app.get('/health')
    def health() -> dict:
        return {'status': 'ok'}

    return app


configure_logging()
app = create_app()
