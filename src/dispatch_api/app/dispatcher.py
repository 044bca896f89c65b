"""Run one workflow graph end to end in a single synchronous request.

Beginner terms:
- Dispatcher: the object that walks a request through quota, classification,
  prompt composition, the model call, parsing, and persistence.
- Slot: one unit of the caller's monthly execution quota. It is reserved
  before the model call and given back if no model answer is produced.

Once the model has answered, nothing after that point may fail the request:
parsing never raises and persistence errors are logged and swallowed.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from .classifier import Archetype, Classification, Trait, classify, content_url
from .config import Settings
from .content import ContentFetcher, MediaReference, media_reference_for
from .errors import (
    BackendNotConfigured,
    DispatchError,
    DispatchFailed,
    ModelError,
    QuotaExceeded,
    ValidationFailed,
    dispatch_error_from_model_error,
)
from .invoker import Invocation, ModelInvoker
from .llm import ModelClient
from .models import (
    BackendStatus,
    NodeResultInput,
    QuotaDecision,
    RunMetadata,
    RunWorkflowRequest,
    RunWorkflowResponse,
)
from .parser import (
    ParsedOutput,
    find_untraceable_node_ids,
    parse_model_output,
    result_node_id,
    result_node_name,
)
from .prompts import PromptSpec, compose
from .quota import QuotaGuard, credits_for_run
from .storage import DispatchStorage

logger = logging.getLogger(__name__)

RESULT_SUMMARY_MAX_CHARS = 500


class WorkflowDispatcher:
    """Execute submitted graphs against the configured model client."""

    def __init__(
        self,
        *,
        storage: DispatchStorage,
        model_client: ModelClient | None,
        quota_guard: QuotaGuard,
        content_fetcher: ContentFetcher,
        settings: Settings,
    ) -> None:
        self.storage = storage
        self.model_client = model_client
        self.quota_guard = quota_guard
        self.content_fetcher = content_fetcher
        self.settings = settings

    def backend_status(self) -> BackendStatus:
        now = datetime.now(UTC)
        if self.model_client is None:
            return BackendStatus(
                status="offline",
                message=f"{self.settings.llm_provider} API key not configured",
                timestamp=now,
            )
        return BackendStatus(status="ready", message="Workflow API is ready", timestamp=now)

    def run(self, request: RunWorkflowRequest, user_id: str | None = None) -> RunWorkflowResponse:
        started_at = datetime.now(UTC)
        if not request.nodes:
            raise ValidationFailed("No nodes provided in workflow")

        workflow_name = request.resolved_name()
        logger.info(
            "workflow_run event=received workflow_id=%s user_id=%s nodes=%d edges=%d",
            request.workflow_id,
            user_id,
            len(request.nodes),
            len(request.edges),
        )

        reservation = self._reserve(user_id)
        try:
            if self.model_client is None:
                raise BackendNotConfigured(
                    f"No API key configured for llm provider {self.settings.llm_provider}"
                )
            classification = classify(request.nodes, workflow_name)
            logger.info(
                "workflow_run event=classified archetype=%s variant=%s nodes=%d reasons=%s",
                classification.archetype.value,
                classification.variant,
                len(request.nodes),
                ",".join(classification.reasons),
            )
            prompt = compose(
                classification,
                request.graph(),
                workflow_name=workflow_name,
                article_text=self._article_text(classification),
                content_max_chars=self.settings.prompt_content_max_chars,
            )
            invocation = self._invoke(
                self.model_client, prompt, self._media_for(classification, prompt)
            )
        except DispatchError:
            self._release(user_id, reservation)
            raise
        except Exception as exc:
            self._release(user_id, reservation)
            logger.exception("workflow_run event=failed workflow_id=%s", request.workflow_id)
            raise DispatchFailed(str(exc) or "Unknown error") from exc

        parsed = parse_model_output(invocation.text)
        unmatched = find_untraceable_node_ids(parsed.per_node_results, request.nodes)
        if unmatched:
            logger.warning(
                "workflow_run event=untraceable_node_ids workflow_id=%s ids=%s",
                request.workflow_id,
                ",".join(unmatched),
            )
        if len(parsed.per_node_results) > len(request.nodes):
            logger.warning(
                "workflow_run event=excess_node_results results=%d nodes=%d",
                len(parsed.per_node_results),
                len(request.nodes),
            )

        execution_id = self._persist(
            request,
            user_id=user_id,
            workflow_name=workflow_name,
            classification=classification,
            parsed=parsed,
            unmatched=set(unmatched),
            started_at=started_at,
        )
        credits_refresh = self._charge(
            user_id,
            tier=reservation.tier if reservation is not None else None,
            request=request,
            classification=classification,
        )
        logger.info(
            "workflow_run event=completed execution_id=%s archetype=%s "
            "per_node_results=%d used_media=%s",
            execution_id,
            classification.archetype.value,
            len(parsed.per_node_results),
            invocation.used_media,
        )
        return RunWorkflowResponse(
            workflow_id=request.workflow_id,
            workflow_name=workflow_name,
            result=parsed.summary,
            analysis=parsed.summary,
            per_node_results=parsed.per_node_results,
            credits_refresh=credits_refresh,
            metadata=RunMetadata(
                model=invocation.model,
                archetype=classification.archetype.value,
                nodes_processed=len(request.nodes),
                edges_processed=len(request.edges),
                regions_analyzed=classification.count(Trait.REGION),
                timestamp=datetime.now(UTC),
                used_media=invocation.used_media,
                execution_id=execution_id,
                unmatched_node_ids=unmatched,
                fallback_reason=invocation.fallback_reason,
            ),
        )

    def _reserve(self, user_id: str | None) -> QuotaDecision | None:
        # Anonymous runs are not metered.
        if user_id is None:
            return None
        decision = self.quota_guard.reserve(user_id)
        if not decision.allowed:
            raise QuotaExceeded(decision.reason or "Execution limit reached", remaining=0)
        return decision

    def _release(self, user_id: str | None, reservation: QuotaDecision | None) -> None:
        if reservation is not None and user_id is not None:
            self.quota_guard.release(user_id, reservation)

    def _article_text(self, classification: Classification) -> str:
        if classification.archetype not in (Archetype.MEDIA_BIAS, Archetype.CONTENT_IMPACT):
            return ""
        if classification.variant != "article":
            return ""
        articles = classification.nodes_with(Trait.ARTICLE)
        url = content_url(articles[0]) if articles else ""
        if not url:
            return ""
        return self.content_fetcher.fetch_article_text(url)

    @staticmethod
    def _media_for(classification: Classification, prompt: PromptSpec) -> MediaReference | None:
        if classification.archetype is not Archetype.CONTENT_IMPACT:
            return None
        if classification.variant != "video" or not prompt.content_url:
            return None
        return media_reference_for(prompt.content_url)

    def _invoke(
        self, client: ModelClient, prompt: PromptSpec, media: MediaReference | None
    ) -> Invocation:
        invoker = ModelInvoker(client=client, timeout_s=self.settings.llm_timeout_s)
        try:
            return invoker.invoke(prompt, media)
        except ModelError as exc:
            logger.warning(
                "workflow_run event=model_failed archetype=%s error=%s reason=%s",
                prompt.archetype.value,
                type(exc).__name__,
                exc,
            )
            raise dispatch_error_from_model_error(exc) from exc
        except Exception as exc:
            logger.exception("workflow_run event=model_failed archetype=%s", prompt.archetype.value)
            raise DispatchFailed(str(exc) or "Unknown error") from exc

    def _persist(
        self,
        request: RunWorkflowRequest,
        *,
        user_id: str | None,
        workflow_name: str,
        classification: Classification,
        parsed: ParsedOutput,
        unmatched: set[str],
        started_at: datetime,
    ) -> str | None:
        """Write the execution record and node results; return the execution id."""
        try:
            record = self.storage.create_execution(
                user_id=user_id,
                workflow_id=request.workflow_id,
                workflow_name=workflow_name,
                archetype=classification.archetype.value,
                started_at=started_at,
                completed_at=datetime.now(UTC),
                result_summary=parsed.summary[:RESULT_SUMMARY_MAX_CHARS],
                nodes_executed=len(request.nodes),
            )
        except Exception:  # noqa: BLE001
            logger.exception("workflow_run event=persist_failed stage=execution")
            return None

        names = {node.id: node.display_name() for node in request.nodes}
        rows = []
        for item in parsed.per_node_results:
            node_id = result_node_id(item)
            rows.append(
                NodeResultInput(
                    node_id=node_id,
                    node_name=result_node_name(item) or names.get(node_id, "Node"),
                    result=item,
                    matched=node_id not in unmatched,
                )
            )
        try:
            self.storage.insert_node_results(record.execution_id, rows)
        except Exception:  # noqa: BLE001
            logger.exception(
                "workflow_run event=persist_failed stage=node_results execution_id=%s",
                record.execution_id,
            )
        return record.execution_id

    def _charge(
        self,
        user_id: str | None,
        *,
        tier: str | None,
        request: RunWorkflowRequest,
        classification: Classification,
    ) -> bool:
        if user_id is None:
            return False
        details: dict[str, Any] = {
            "workflow_name": request.resolved_name(),
            "archetype": classification.archetype.value,
            "nodes": len(request.nodes),
        }
        charge = self.quota_guard.charge(
            user_id,
            credits_for_run(len(request.nodes)),
            tier=tier or "free",
            workflow_id=request.workflow_id,
            details=details,
        )
        return charge.success
