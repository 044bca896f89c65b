"""Recover `{summary, perNodeResults}` from free-form model text.

The model is asked for a single JSON object, but in practice it wraps the
object in prose or a markdown fence, or ignores the contract entirely.
`parse_model_output` never raises: the worst case is "the whole text is the
summary and there are no per-node results".
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from .models import Node

logger = logging.getLogger(__name__)

_JSON_FENCE_RE = re.compile(r"```json\s*(.*?)```", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class ParsedOutput:
    summary: str
    per_node_results: list[dict[str, Any]] = field(default_factory=list)
    # True when a JSON object was recovered from the text.
    structured: bool = False


def parse_model_output(raw_text: Any) -> ParsedOutput:
    """Extract the structured payload; fall back to plain text."""
    text = raw_text if isinstance(raw_text, str) else ""
    try:
        payload = _first_json_object(text)
    except Exception as exc:  # noqa: BLE001
        logger.warning("model_output parse failed; using plain text. reason=%s", exc)
        payload = None
    if payload is None:
        return ParsedOutput(summary=text, per_node_results=[], structured=False)

    summary = payload.get("summary")
    if not isinstance(summary, str):
        summary = text
    return ParsedOutput(
        summary=summary,
        per_node_results=_per_node_results(payload.get("perNodeResults")),
        structured=True,
    )


def find_untraceable_node_ids(
    per_node_results: Iterable[dict[str, Any]], nodes: Iterable[Node]
) -> list[str]:
    """Return nodeIds from the model answer that are not in the submitted graph."""
    known = {node.id for node in nodes}
    unmatched: list[str] = []
    for item in per_node_results:
        node_id = result_node_id(item)
        if node_id not in known and node_id not in unmatched:
            unmatched.append(node_id)
    return unmatched


def result_node_id(item: dict[str, Any]) -> str:
    value = item.get("nodeId", item.get("id", ""))
    return str(value) if value is not None else ""


def result_node_name(item: dict[str, Any]) -> str:
    value = item.get("nodeName", item.get("label", ""))
    return str(value) if value is not None else ""


def _first_json_object(text: str) -> dict[str, Any] | None:
    for candidate in _candidates(text):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _candidates(text: str) -> Iterator[str]:
    # 1) ```json fenced block
    match = _JSON_FENCE_RE.search(text)
    if match:
        yield match.group(1).strip()
    # 2) outermost brace span
    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        yield text[first : last + 1]


def _per_node_results(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]
