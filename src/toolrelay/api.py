"""toolrelay HTTP API.

Endpoints
---------
POST /api/mcp/stdio-result   deliver the result of an out-of-band stdio tool call
GET  /api/tools              every tool in the catalog, with parameters
POST /api/tools/execute      run one tool directly (tool debugger)
GET  /api/mcp/servers        HTTP tool servers configured through MCP_SERVERS
GET  /health
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Mapping, Optional, Sequence
from uuid import UUID

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .pending import PendingRequestLedger, StdioResult
from .tools.errors import ToolConfigError, ToolDeniedError, ToolRequestError
from .tools.manager import ToolManager

log = logging.getLogger("toolrelay.api")


class StdioResultIn(BaseModel):
    requestId: UUID
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None


class ExecuteIn(BaseModel):
    toolName: str
    arguments: dict[str, Any] = Field(default_factory=dict)


def _display_name(name: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in name.replace("_", " ").split(" "))


def create_app(
    manager: ToolManager,
    ledger: PendingRequestLedger | None = None,
    stdio_servers: Sequence[Mapping[str, Any]] = (),
) -> FastAPI:
    ledger = ledger or manager.ledger

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if stdio_servers:
            await manager.start_stdio_servers(stdio_servers)
        await manager.refresh_catalog()
        log.info("serving %d tool(s)", len(manager.catalog.tools))
        yield
        await manager.close()

    app = FastAPI(title="toolrelay", lifespan=lifespan)

    @app.exception_handler(RequestValidationError)
    async def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        log.warning("invalid request body on %s: %s", request.url.path, exc.errors())
        return JSONResponse(status_code=400, content={"error": "Invalid request body"})

    @app.exception_handler(Exception)
    async def _global_exc(request: Request, exc: Exception) -> JSONResponse:
        msg = str(exc)
        log.error("Unhandled error [%s %s]: %s", request.method, request.url.path, msg, exc_info=True)
        return JSONResponse(status_code=500, content={"error": msg})

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "tools": len(manager.catalog.tools),
            "stdio_servers": manager.stdio.running(),
            "pending": len(ledger),
        }

    @app.post("/api/mcp/stdio-result")
    async def stdio_result(body: StdioResultIn) -> Any:
        resolved = ledger.resolve(
            str(body.requestId),
            StdioResult(success=body.success, output=body.output, error=body.error),
        )
        if not resolved:
            log.warning("stdio result for unknown or resolved request %s", body.requestId)
            return JSONResponse(status_code=404, content={"error": "Request not found or already resolved"})
        log.debug("stdio result received for %s (success=%s)", body.requestId, body.success)
        return {"ok": True}

    @app.get("/api/mcp/servers")
    async def list_servers() -> list[dict[str, Any]]:
        return [
            {
                "id": f"base-{remote.name}",
                "name": remote.name,
                "url": remote.url,
                "transport": "http",
                "type": "base",
                "isLocked": False,
            }
            for remote in manager.remotes.values()
        ]

    @app.get("/api/tools")
    async def list_tools() -> dict[str, Any]:
        tools = []
        for index, entry in enumerate(manager.catalog.entries()):
            descriptor = manager.catalog.descriptor(entry.name)
            tools.append(
                {
                    "_id": f"tool_{index}",
                    "displayName": _display_name(entry.name),
                    **entry.as_dict(),
                    "parameters": descriptor.parameters if descriptor else {},
                }
            )
        return {"tools": tools}

    @app.post("/api/tools/execute")
    async def execute_tool(body: ExecuteIn) -> Any:
        log.info("executing %s from the tool debugger", body.toolName)
        try:
            output = await manager.execute(body.toolName, body.arguments)
        except (ToolConfigError, ToolDeniedError) as exc:
            return JSONResponse(status_code=exc.status_code or 500, content={"success": False, "error": str(exc)})
        except ToolRequestError as exc:
            log.warning("tool %s failed: %s", body.toolName, exc)
            return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
        return {"success": True, "result": output.text}

    return app
