"""Pydantic models shared across API, classifier, composer, dispatcher, and storage.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Alias: the camelCase name a field uses on the wire (the editor sends camelCase).
- populate_by_name: lets Python code build models with snake_case names too.
- Field(default_factory=...): creates a fresh default object per instance.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Execution records are written once, after the model answered.
ExecutionStatus = Literal["completed"]


class WireModel(BaseModel):
    """Base for request/response bodies that use camelCase on the wire."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Node(WireModel):
    """One task node of the submitted graph (read-only input)."""

    id: str
    # Role tag set by the graph editor (brainNode, newsArticleNode, ...).
    type: str = ""
    # Open attribute bag: label, description, url, traits, region fields, ...
    data: dict[str, Any] = Field(default_factory=dict)
    position: dict[str, float] | None = None

    @property
    def label(self) -> str:
        value = self.data.get("label")
        return value if isinstance(value, str) else ""

    def text(self, key: str, default: str = "") -> str:
        """Read a string attribute from `data`; non-strings fall back to default."""
        value = self.data.get(key)
        if isinstance(value, str) and value.strip():
            return value
        return default

    def display_name(self, fallback: str | None = None) -> str:
        return self.label or fallback or self.type or self.id


class Edge(WireModel):
    """Descriptive connection between two nodes (not an execution order)."""

    id: str | None = None
    source: str
    target: str


class WorkflowGraph(WireModel):
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    @field_validator("nodes", "edges", mode="before")
    @classmethod
    def _null_as_empty(cls, value: object) -> object:
        return [] if value is None else value


class RunWorkflowRequest(WorkflowGraph):
    """Request body for POST /workflows/run."""

    workflow_id: str | None = Field(default=None, alias="workflowId")
    workflow_name: str | None = Field(default=None, alias="workflowName")
    # Older editor builds send `name` instead of `workflowName`.
    name: str | None = None

    def resolved_name(self) -> str:
        return self.workflow_name or self.name or "Untitled Workflow"

    def graph(self) -> WorkflowGraph:
        return WorkflowGraph(nodes=self.nodes, edges=self.edges)


class RunMetadata(WireModel):
    model: str
    archetype: str
    nodes_processed: int = Field(alias="nodesProcessed")
    edges_processed: int = Field(alias="edgesProcessed")
    regions_analyzed: int = Field(default=0, alias="regionsAnalyzed")
    timestamp: datetime
    used_media: bool = Field(default=False, alias="usedMedia")
    execution_id: str | None = Field(default=None, alias="executionId")
    unmatched_node_ids: list[str] = Field(default_factory=list, alias="unmatchedNodeIds")
    # Set when an attached video was rejected and the text-only prompt answered.
    fallback_reason: str | None = Field(default=None, alias="fallbackReason")


class RunWorkflowResponse(WireModel):
    """Response body for a successful POST /workflows/run."""

    success: bool = True
    workflow_id: str | None = Field(default=None, alias="workflowId")
    workflow_name: str = Field(alias="workflowName")
    result: str
    # Same text as `result`; the dashboard reads this key.
    analysis: str
    per_node_results: list[dict[str, Any]] = Field(default_factory=list, alias="perNodeResults")
    credits_refresh: bool = Field(default=False, alias="creditsRefresh")
    metadata: RunMetadata


class ExecutionRecord(BaseModel):
    """Canonical execution row, created once per successful run."""

    execution_id: str
    user_id: str | None = None
    workflow_id: str | None = None
    workflow_name: str = ""
    archetype: str = ""
    status: ExecutionStatus = "completed"
    started_at: datetime
    completed_at: datetime
    result_summary: str = ""
    nodes_executed: int = 0
    created_at: datetime


class NodeResultRecord(BaseModel):
    """One persisted per-node answer, keyed back to the execution."""

    id: int
    execution_id: str
    node_id: str
    node_name: str
    result: dict[str, Any] = Field(default_factory=dict)
    # False when node_id does not belong to the submitted graph.
    matched: bool = True
    created_at: datetime
    updated_at: datetime


class NodeResultInput(BaseModel):
    """Node result payload before it has a row id."""

    node_id: str
    node_name: str
    result: dict[str, Any] = Field(default_factory=dict)
    matched: bool = True


class CreditCharge(BaseModel):
    """Outcome of a best-effort credit deduction."""

    success: bool
    amount: float = 0.0
    new_balance: float | None = None
    reason: str | None = None


class QuotaDecision(WireModel):
    """Quota gate outcome for one user in the current calendar month."""

    allowed: bool
    # -1 means unlimited.
    remaining: int
    limit: int
    used: int = 0
    tier: str = "free"
    reason: str | None = None
    # True only when a usage counter was actually incremented for this decision.
    reserved: bool = Field(default=False, exclude=True)


class BackendStatus(BaseModel):
    status: Literal["ready", "offline"]
    message: str
    timestamp: datetime
