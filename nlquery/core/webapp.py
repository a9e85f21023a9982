"""FastAPI service exposing the query engine over HTTP."""

from __future__ import annotations

import argparse
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from nlquery.core.config import load_settings
from nlquery.core.context import QueryContext
from nlquery.core.dependencies import EngineDependencies, build_dependencies
from nlquery.core.errors import QueryEngineError
from nlquery.core.guards import check_question
from nlquery.core.request_queue import Deadline
from nlquery.core.responses import ErrorResult, QueryResponse, to_payload

LOGGER = logging.getLogger(__name__)

STATUS_BY_ERROR_KIND = {
    "invalid_request": 400,
    "off_topic": 400,
    "restricted_operation": 403,
    "rate_limit": 429,
    "internal_error": 500,
}


class QueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str
    previous_context: dict[str, Any] | None = Field(None, alias="previousContext")
    original_context: dict[str, Any] | None = Field(None, alias="originalContext")
    follow_up_depth: int = Field(0, ge=0, alias="followUpDepth")
    is_follow_up: bool = Field(False, alias="isFollowUp")


class IndexStatusResponse(BaseModel):
    ready: bool
    needs_refresh: bool
    columns: dict[str, dict[str, Any]]
    queue: dict[str, int]


class ColumnValuesResponse(BaseModel):
    column: str
    values: list[str]


def _error_response(result: ErrorResult) -> JSONResponse:
    return JSONResponse(to_payload(result), status_code=STATUS_BY_ERROR_KIND.get(result.kind, 500))


def _truncate_for_log(value: str, limit: int = 200) -> str:
    text = value.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def create_app(
    config_path: str = "configs/dev.yaml",
    *,
    dependencies: EngineDependencies | None = None,
    refresh_on_startup: bool = True,
) -> FastAPI:
    LOGGER.info("Initialising query service with config '%s'", config_path)
    settings = load_settings(config_path)
    if dependencies is None:
        dependencies = build_dependencies(settings)
    agent = dependencies.agent
    index = dependencies.index

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if refresh_on_startup:
            try:
                counts = await run_in_threadpool(index.refresh)
            except Exception:
                LOGGER.exception("Initial column index refresh failed")
            else:
                LOGGER.info("Column index warmed for %s column(s)", len(counts))
        yield

    app = FastAPI(title="Natural-Language Query Service", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.dependencies = dependencies

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        LOGGER.warning("Rejected malformed request to %s: %s", request.url.path, exc.errors())
        return _error_response(ErrorResult("invalid_request", "Request body is malformed"))

    @app.get("/api/health")
    def healthcheck() -> dict[str, str]:  # pragma: no cover - trivial
        return {"status": "ok"}

    @app.get("/api/index/status", response_model=IndexStatusResponse)
    def index_status() -> IndexStatusResponse:
        status = index.status()
        return IndexStatusResponse(
            ready=status["ready"],
            needs_refresh=status["needs_refresh"],
            columns=status["columns"],
            queue=dependencies.request_queue.stats(),
        )

    @app.post("/api/index/refresh")
    def refresh_index() -> dict[str, Any]:
        LOGGER.info("Manual column index refresh requested")
        counts = index.refresh()
        if dependencies.sizes is not None:
            dependencies.sizes.invalidate()
        return {"refreshed": counts}

    @app.get("/api/columns/{column}/values", response_model=ColumnValuesResponse)
    def column_values(column: str) -> ColumnValuesResponse:
        if column not in index.columns:
            raise HTTPException(status_code=404, detail="Column is not indexed")
        return ColumnValuesResponse(column=column, values=index.values(column))

    @app.post("/api/query")
    async def query(payload: QueryRequest) -> JSONResponse:
        request_id = uuid4().hex[:12]
        LOGGER.info(
            "Received question request_id=%s question=%s",
            request_id,
            _truncate_for_log(payload.question),
        )
        try:
            question = check_question(payload.question)
            previous = QueryContext.from_payload(payload.previous_context)
            original = QueryContext.from_payload(payload.original_context)
        except QueryEngineError as exc:
            LOGGER.info("Request %s rejected before the engine: %s", request_id, exc.kind)
            return _error_response(ErrorResult.from_exception(exc))

        timeout_s = settings.request_timeout_s
        deadline = Deadline(timeout_s)
        # A timeout only ends the wait: the worker thread keeps going until its
        # next deadline check, and an in-flight model call runs to completion.
        try:
            response: QueryResponse = await asyncio.wait_for(
                run_in_threadpool(
                    agent.answer_question,
                    request_id=request_id,
                    question=question,
                    previous_context=previous,
                    original_context=original,
                    follow_up_depth=payload.follow_up_depth,
                    explicit_follow_up=payload.is_follow_up,
                    deadline=deadline,
                ),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError:
            LOGGER.warning("Request %s exceeded %.0fs", request_id, timeout_s)
            return _error_response(ErrorResult("internal_error", "The request timed out"))
        except Exception:
            LOGGER.exception("Request %s failed unexpectedly", request_id)
            return _error_response(ErrorResult("internal_error", "The request could not be processed"))

        if isinstance(response, ErrorResult):
            return _error_response(response)

        chain = agent.next_chain(
            response,
            question=question,
            previous_context=previous,
            original_context=original,
            follow_up_depth=payload.follow_up_depth,
            explicit_follow_up=payload.is_follow_up,
        )
        body = to_payload(response)
        body.update(chain.to_payload())
        LOGGER.info("Request %s answered with %s", request_id, response.tag)
        return JSONResponse(body)

    return app


def _configure_logging(debug: bool) -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        if debug:
            root_logger.setLevel(logging.DEBUG)
        return
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Launch the query service")
    parser.add_argument("--config", default="configs/dev.yaml", help="Path to configuration file")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind the server")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind the server")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    _configure_logging(debug=args.debug)
    app = create_app(config_path=args.config)

    import uvicorn

    LOGGER.info("Starting uvicorn on %s:%s", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
