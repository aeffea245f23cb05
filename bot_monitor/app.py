from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from bot_monitor.context import MonitorContext
from bot_monitor.report import build_status_payload


LIVENESS_TEXT = "bot-monitor OK"


def create_app(ctx: MonitorContext) -> FastAPI:
    app = FastAPI(title="Bot Monitor", version="0.1.0", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.ctx = ctx

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return PlainTextResponse("Not found", status_code=404)
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code)

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return LIVENESS_TEXT

    @app.get("/status")
    async def status() -> JSONResponse:
        c: MonitorContext = app.state.ctx
        return JSONResponse(build_status_payload(c.roster, c.metrics()))

    return app
