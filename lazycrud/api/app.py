"""
FastAPI application exposing an Engine's operations over HTTP.

Every operation is reachable as POST {api_prefix}/{operation name}
with a JSON object body holding its keyword arguments:

    POST /api/blog.create          {"title": "Hello", "category": "tech"}
    POST /api/blog.auth.list       {"pagination_opts": {"num_items": 10}}
    POST /api/org.invite           {"org_id": "...", "email": "a@b.c"}

Failures come back as {"error": {"code": ..., "message": ..., ...}}
with an HTTP status derived from the error code.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..config import Settings, setup_logging
from ..engine import Engine
from ..errors import CrudError, ErrorCode, err

logger = logging.getLogger(__name__)

STATUS_BY_CODE: Dict[ErrorCode, int] = {
    ErrorCode.NOT_AUTHENTICATED: 401,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.USER_NOT_FOUND: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_AUTHORIZED: 403,
    ErrorCode.INSUFFICIENT_ORG_ROLE: 403,
    ErrorCode.NOT_ORG_MEMBER: 403,
    ErrorCode.CANNOT_MODIFY_ADMIN: 403,
    ErrorCode.CANNOT_MODIFY_OWNER: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.FILE_NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.ORG_SLUG_TAKEN: 409,
    ErrorCode.ALREADY_ORG_MEMBER: 409,
    ErrorCode.JOIN_REQUEST_EXISTS: 409,
    ErrorCode.INVITE_EXPIRED: 410,
    ErrorCode.FILE_TOO_LARGE: 413,
    ErrorCode.RATE_LIMITED: 429,
}


def status_for(code: ErrorCode) -> int:
    """HTTP status for an error code; anything unlisted is a 400."""
    return STATUS_BY_CODE.get(code, 400)


def header_user_resolver(header: Optional[str] = None) -> Callable[[Any], Optional[str]]:
    """resolve_user_id reading the caller id from a request header.

    The header defaults to Settings.user_header. Only suitable behind a
    gateway that authenticates and sets the header.
    """
    header = header or Settings().user_header

    def resolve_user_id(request: Any) -> Optional[str]:
        if request is None:
            return None
        return request.headers.get(header) or None

    return resolve_user_id


async def _read_args(request: Request, name: str) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        args = await request.json()
    except ValueError as e:
        raise CrudError(ErrorCode.VALIDATION_FAILED, message="Body is not valid JSON", op=name) from e
    if args is None:
        return {}
    if not isinstance(args, dict):
        raise CrudError(ErrorCode.VALIDATION_FAILED, message="Body must be a JSON object", op=name)
    return args


def create_app(engine: Engine, title: str = "lazycrud") -> FastAPI:
    """Create the FastAPI app for engine.

    The store is connected on startup and closed on shutdown.
    """
    prefix = engine.settings.api_prefix.rstrip("/")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await engine.start()
        yield
        await engine.close()

    app = FastAPI(
        title=title,
        description="Generated CRUD operations",
        lifespan=lifespan,
    )
    app.state.engine = engine

    @app.exception_handler(CrudError)
    async def crud_error_handler(request: Request, exc: CrudError) -> JSONResponse:
        logger.info("api:error", extra={"error": exc.to_dict(), "path": request.url.path})
        return JSONResponse(status_code=status_for(exc.code), content={"error": exc.to_dict()})

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "healthy", "service": title, "operations": len(engine.operations)}

    @app.get(prefix or "/")
    async def list_operations() -> Dict[str, Any]:
        return {
            "operations": [
                {"name": name, "kind": op.kind.value}
                for name, op in sorted(engine.operations.items())
            ]
        }

    @app.post(prefix + "/{name}")
    async def call_operation(name: str, request: Request) -> JSONResponse:
        operation = engine.operations.get(name)
        if operation is None:
            raise err(ErrorCode.NOT_FOUND, f":{name}")
        args = await _read_args(request, name)
        result = await operation(request, **args)
        return JSONResponse(content={"result": jsonable_encoder(result)})

    return app


def serve(engine: Engine, host: str = "0.0.0.0", port: int = 8000) -> None:
    """Configure logging and run the app under uvicorn until interrupted."""
    import uvicorn

    setup_logging(engine.settings)
    uvicorn.run(create_app(engine), host=host, port=port, log_config=None)
