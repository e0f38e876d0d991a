"""Query console HTTP server.

Serves the static console page and three JSON endpoints:

* ``POST /api/execute``               execute / parse / plan a statement
* ``POST /api/database-objects``      list databases, tables, views or columns
* ``POST /api/validate-environment``  resolve a server's environment label

Endpoint coroutines call the synchronous handlers directly, so uvicorn
processes exactly one request at a time.
"""

import decimal
import functools
import logging
import uuid
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, PlainTextResponse, Response
from starlette.routing import Route

from .config import ConsoleConfig, configure_logging, load_config
from .connections import ConnectionFactory
from .environment import EnvironmentClassifier
from .handlers import DatabaseObjectsHandler, QueryDispatcher, QueryRequest, RequestError

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".html": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
}

API_ENDPOINTS = ("/api/database-objects", "/api/execute", "/api/validate-environment")

_UVICORN_LEVELS = {"critical", "error", "warning", "info", "debug", "trace"}


def _make_json_serializable(obj: Any) -> Any:
    """Recursively convert objects to JSON-serializable types."""
    if isinstance(obj, dict):
        return {k: _make_json_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_make_json_serializable(v) for v in obj]
    elif isinstance(obj, (datetime, date, time)):
        return obj.isoformat()
    elif isinstance(obj, decimal.Decimal):
        return float(obj)
    elif isinstance(obj, uuid.UUID):
        return str(obj)
    elif isinstance(obj, (bytes, bytearray, memoryview)):
        return "0x" + bytes(obj).hex().upper()
    return obj


def _json(content: Dict[str, Any], status_code: int = 200) -> JSONResponse:
    return JSONResponse(_make_json_serializable(content), status_code=status_code)


def _api_endpoint(func: Callable[[Request], Awaitable[Response]]) -> Callable[[Request], Awaitable[Response]]:
    """Turn every failure inside an endpoint into a JSON error response."""

    @functools.wraps(func)
    async def wrapper(request: Request) -> Response:
        try:
            return await func(request)
        except RequestError as exc:
            logger.info(f"Bad request to {request.url.path}: {exc}")
            return _json({"error": str(exc)}, status_code=400)
        except Exception as exc:
            logger.exception(f"Unhandled error processing {request.method} {request.url.path}")
            return _json({"error": f"Internal server error: {exc}"}, status_code=500)

    return wrapper


async def _read_payload(request: Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise RequestError("Invalid JSON request body") from exc
    if not isinstance(payload, dict):
        raise RequestError("Request body must be a JSON object")
    return payload


@_api_endpoint
async def execute_query(request: Request) -> Response:
    payload = await _read_payload(request)
    query_request = QueryRequest.from_payload(payload)
    return _json(request.app.state.dispatcher.dispatch(query_request))


@_api_endpoint
async def database_objects(request: Request) -> Response:
    payload = await _read_payload(request)
    server = payload.get("serverName")
    object_type = payload.get("objectType")
    context = payload.get("context") or {}
    if not isinstance(server, str) or not isinstance(object_type, str):
        raise RequestError("'serverName' and 'objectType' must be strings")
    if not isinstance(context, dict):
        raise RequestError("'context' must be a JSON object")
    for key in ("database", "table"):
        if context.get(key) is not None and not isinstance(context[key], str):
            raise RequestError(f"'context.{key}' must be a string")
    return _json(request.app.state.objects.list_objects(server.strip(), object_type.strip().lower(), context))


@_api_endpoint
async def validate_environment(request: Request) -> Response:
    payload = await _read_payload(request)
    server = payload.get("serverName")
    if not isinstance(server, str) or not server.strip():
        raise RequestError("'serverName' is required")
    server = server.strip()

    lookup = request.app.state.classifier.classify(server)
    if lookup.found:
        return _json({"environment": lookup.label})
    if lookup.failed:
        return _json({"error": f"Environment lookup failed: {lookup.error}"})
    return _json({"error": f"Server '{server}' not found in inventory"})


@_api_endpoint
async def api_not_found(request: Request) -> Response:
    if request.url.path in API_ENDPOINTS:
        return _json({"error": f"Method {request.method} not allowed"}, status_code=405)
    return _json({"error": f"Unknown endpoint: {request.url.path}"}, status_code=404)


async def static_asset(request: Request) -> Response:
    web_root: Path = request.app.state.web_root
    relative = request.path_params.get("path") or "index.html"
    candidate = (web_root / relative).resolve()
    try:
        candidate.relative_to(web_root)
    except ValueError:
        return PlainTextResponse("Not Found", status_code=404)

    media_type = CONTENT_TYPES.get(candidate.suffix.lower())
    if media_type is None or not candidate.is_file():
        return PlainTextResponse("Not Found", status_code=404)
    return FileResponse(candidate, media_type=media_type)


def create_app(config: ConsoleConfig, factory: Optional[ConnectionFactory] = None) -> Starlette:
    """Wire the handlers for ``config`` into a Starlette application."""
    factory = factory or ConnectionFactory(config.connection)
    classifier = EnvironmentClassifier(factory, config)

    routes = [
        Route("/api/execute", execute_query, methods=["POST"]),
        Route("/api/database-objects", database_objects, methods=["POST"]),
        Route("/api/validate-environment", validate_environment, methods=["POST"]),
        Route("/api/{name:path}", api_not_found, methods=["GET", "POST", "PUT", "DELETE", "PATCH"]),
        Route("/", static_asset, methods=["GET"]),
        Route("/{path:path}", static_asset, methods=["GET"]),
    ]
    app = Starlette(routes=routes)
    app.state.config = config
    app.state.web_root = Path(config.web_root).resolve()
    app.state.classifier = classifier
    app.state.dispatcher = QueryDispatcher(config, factory, classifier)
    app.state.objects = DatabaseObjectsHandler(config, factory)
    return app


def main() -> None:
    config = load_config()
    configure_logging(config.log_level, config.log_file)

    app = create_app(config)
    log_level = config.log_level.lower()
    if log_level not in _UVICORN_LEVELS:
        log_level = "info"

    logger.info(
        f"Starting query console on http://{config.host}:{config.port} "
        f"(inventory {config.inventory_server}/{config.inventory_database}, web root {config.web_root})"
    )
    # uvicorn exits the process itself when the port cannot be bound.
    uvicorn.run(app, host=config.host, port=config.port, log_level=log_level, log_config=None, workers=1)


if __name__ == "__main__":
    main()
