"""FastAPI application wiring for the workflow dispatch service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Route/path operation: a function exposed over HTTP (for example, GET /health).
- response_model: Pydantic model used to validate/shape API responses.
- app.state: a place to store shared runtime objects (storage, dispatcher).
- Exception handler: turns a raised DispatchError into a JSON error response.

Run with `uvicorn --factory dispatch_api.main:create_app`.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .app.config import Settings, get_settings
from .app.content import ContentFetcher, HttpArticleFetcher
from .app.dispatcher import WorkflowDispatcher
from .app.errors import DispatchError
from .app.llm import ModelClient, build_model_client
from .app.models import BackendStatus, QuotaDecision, RunWorkflowRequest, RunWorkflowResponse
from .app.quota import QuotaGuard
from .app.storage import DispatchStorage, PostgresDispatchStorage

logger = logging.getLogger(__name__)

_UNSET: Any = object()


def create_app(
    *,
    storage: DispatchStorage | None = None,
    settings_override: Settings | None = None,
    model_client: ModelClient | None = _UNSET,
    content_fetcher: ContentFetcher | None = None,
) -> FastAPI:
    """Application factory.

    Collaborators can be injected for tests; otherwise they are built from
    settings. Passing `model_client=None` explicitly simulates a backend with
    no API key.
    """
    settings = settings_override or get_settings()

    if storage is None:
        # Fail fast if required configuration is missing.
        database_url = settings.resolved_database_url().strip()
        if not database_url:
            raise RuntimeError("DISPATCH_DATABASE_URL is required.")
        storage = PostgresDispatchStorage(database_url=database_url)

    if model_client is _UNSET:
        model_client = build_model_client(settings)
    if model_client is None:
        logger.warning("No model API key configured; POST /workflows/run will answer 503")

    if content_fetcher is None:
        content_fetcher = HttpArticleFetcher(
            timeout_s=settings.article_fetch_timeout_s,
            max_chars=settings.article_max_chars,
            user_agent=settings.user_agent,
        )

    quota_guard = QuotaGuard(storage)
    dispatcher = WorkflowDispatcher(
        storage=storage,
        model_client=model_client,
        quota_guard=quota_guard,
        content_fetcher=content_fetcher,
        settings=settings,
    )

    app = FastAPI(title="dispatch_api", version="0.1.0")
    # Shared objects live in app.state so route handlers can reuse them.
    app.state.settings = settings
    app.state.storage = storage
    app.state.quota_guard = quota_guard
    app.state.dispatcher = dispatcher

    @app.exception_handler(DispatchError)
    def handle_dispatch_error(_request: Request, exc: DispatchError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    # Multiple health endpoints map to the same function for compatibility with
    # different probes/load balancers.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/workflows/run", response_model=BackendStatus)
    def backend_status() -> BackendStatus:
        return app.state.dispatcher.backend_status()

    # The upstream auth gateway sets X-User-Id; no header means an anonymous run.
    @app.post("/workflows/run", response_model=RunWorkflowResponse, response_model_by_alias=True)
    def run_workflow(
        payload: RunWorkflowRequest,
        x_user_id: str | None = Header(default=None),
    ) -> RunWorkflowResponse:
        return app.state.dispatcher.run(payload, user_id=x_user_id or None)

    @app.get("/executions/{execution_id}/results")
    def execution_results(execution_id: str) -> dict[str, Any]:
        execution = app.state.storage.get_execution(execution_id)
        if execution is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        results = app.state.storage.list_node_results(execution_id)
        return {
            "execution": execution.model_dump(mode="json"),
            "results": [item.model_dump(mode="json") for item in results],
        }

    @app.get("/quota", response_model=QuotaDecision, response_model_by_alias=True)
    def quota(x_user_id: str | None = Header(default=None)) -> QuotaDecision:
        if not x_user_id:
            raise HTTPException(status_code=401, detail="X-User-Id header is required")
        return app.state.quota_guard.check(x_user_id)

    return app
