"""Single model call per run: multimodal first when a video is attached, then text."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .content import MediaReference
from .errors import ModelError
from .llm import ModelClient
from .prompts import PromptSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Invocation:
    text: str
    model: str
    used_media: bool = False
    # Why the multimodal attempt was abandoned, if it was.
    fallback_reason: str | None = None


class ModelInvoker:
    """Send a composed prompt to the model client.

    No retry loop: at most one multimodal attempt and one text-only attempt.
    Errors from the text-only attempt propagate as typed ModelError subclasses.
    """

    def __init__(self, *, client: ModelClient, timeout_s: float = 120.0) -> None:
        self.client = client
        self.timeout_s = timeout_s

    def invoke(self, prompt: PromptSpec, media: MediaReference | None = None) -> Invocation:
        fallback_reason: str | None = None
        if media is not None:
            try:
                text = self.client.generate(
                    text=prompt.text,
                    media=media,
                    params=prompt.generation,
                    timeout_s=self.timeout_s,
                )
                return Invocation(text=text, model=self.client.model, used_media=True)
            except ModelError as exc:
                fallback_reason = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "model_invoke event=media_fallback archetype=%s media=%s reason=%s",
                    prompt.archetype.value,
                    media.uri,
                    fallback_reason,
                )

        text = self.client.generate(
            text=prompt.text,
            media=None,
            params=prompt.generation,
            timeout_s=self.timeout_s,
        )
        return Invocation(text=text, model=self.client.model, fallback_reason=fallback_reason)
