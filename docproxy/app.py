"""HTTP binding for the proxy service and the ``docproxy`` entry point."""

from __future__ import annotations

import contextlib
import logging
import secrets
from typing import Any, AsyncIterator

import uvicorn
from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .config import AppConfig, load_config
from .errors import ProxyError
from .service import ProxyService

LOG = logging.getLogger(__name__)


class ConnectRequest(BaseModel):
    connectionString: str


class SelectDatabaseRequest(BaseModel):
    databaseName: str


class QueryRequest(BaseModel):
    command: str


def get_service(request: Request) -> ProxyService:
    return request.app.state.service


def get_session_id(request: Request) -> str:
    return request.state.session_id


def create_app(config: AppConfig | None = None, *, service: ProxyService | None = None) -> FastAPI:
    """Create the FastAPI application around a ``ProxyService``.

    The service is started with the app and drained on shutdown; handlers
    reach it through ``app.state`` rather than module globals.
    """

    config = config or (service.config if service else load_config())
    service = service or ProxyService(config)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await service.start()
        try:
            yield
        finally:
            await service.shutdown()

    app = FastAPI(title="docproxy", version=__version__, lifespan=lifespan)
    app.state.service = service
    app.state.config = config

    _install_session_cookie(app, config.session_cookie)
    _register_exception_handlers(app)
    _register_routes(app, config.session_cookie)
    return app


def _install_session_cookie(app: FastAPI, cookie_name: str) -> None:
    @app.middleware("http")
    async def session_cookie(request: Request, call_next):  # type: ignore[no-untyped-def]
        session_id = request.cookies.get(cookie_name)
        issued = False
        if not session_id:
            session_id = secrets.token_urlsafe(32)
            issued = True
        request.state.session_id = session_id
        response = await call_next(request)
        if issued and not getattr(request.state, "session_cleared", False):
            response.set_cookie(cookie_name, session_id, httponly=True, samesite="lax")
        return response


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        LOG.info("%s %s failed: %s (%s)", request.method, request.url.path, exc.kind, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in exc.errors())
        return JSONResponse(
            status_code=400,
            content={"error": "InvalidRequest", "message": f"Invalid request body: {fields}"},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        LOG.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "InternalError", "message": "Something went wrong!"},
        )


def _register_routes(app: FastAPI, cookie_name: str) -> None:
    @app.post("/databases/connect")
    async def connect(
        body: ConnectRequest,
        service: ProxyService = Depends(get_service),
        session_id: str = Depends(get_session_id),
    ) -> dict[str, str]:
        return await service.connect(session_id, body.connectionString)

    @app.get("/databases")
    async def list_databases(
        service: ProxyService = Depends(get_service),
        session_id: str = Depends(get_session_id),
    ) -> list[str]:
        return await service.list_databases(session_id)

    @app.post("/databases/select")
    async def select_database(
        body: SelectDatabaseRequest,
        service: ProxyService = Depends(get_service),
        session_id: str = Depends(get_session_id),
    ) -> dict[str, str]:
        return await service.select_database(session_id, body.databaseName)

    @app.get("/databases/collections")
    async def list_collections(
        service: ProxyService = Depends(get_service),
        session_id: str = Depends(get_session_id),
    ) -> list[str]:
        return await service.list_collections(session_id)

    @app.post("/databases/query")
    async def query(
        body: QueryRequest,
        service: ProxyService = Depends(get_service),
        session_id: str = Depends(get_session_id),
    ) -> Any:
        return await service.query(session_id, body.command)

    @app.post("/databases/end-session")
    async def end_session(
        request: Request,
        response: Response,
        service: ProxyService = Depends(get_service),
        session_id: str = Depends(get_session_id),
    ) -> dict[str, str]:
        result = await service.end_session(session_id)
        request.state.session_cleared = True
        response.delete_cookie(cookie_name)
        return result

    @app.get("/status")
    async def status(service: ProxyService = Depends(get_service)) -> dict[str, int]:
        return {"active_sessions": service.active_sessions()}


def main() -> None:
    """Run the proxy with uvicorn using the on-disk configuration."""

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config()
    uvicorn.run(create_app(config), host=config.host, port=config.port)


__all__ = ["create_app", "get_service", "get_session_id", "main"]
