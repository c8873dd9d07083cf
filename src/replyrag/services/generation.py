"""Completion backends for replyrag."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import openai
from openai import OpenAI

from replyrag.embeddings.service import GatewayCaller, build_openai_client

LOGGER = logging.getLogger(__name__)

Message = Mapping[str, str]

# Candidate lines rendered into prompts; the template backend reads them back.
CANDIDATE_LINE = "- id={item_id} | url={url} | {name} | price={price}"
CANDIDATE_LINE_RE = re.compile(r"^- id=(?P<item_id>\S+) \| url=(?P<url>\S+) \| (?P<name>.*?) \| price=", re.MULTILINE)


@dataclass(frozen=True)
class CompletionConfig:
    """Configuration for answer completion."""

    model: str = "gpt-4o-mini"
    max_tokens: int = 2000
    temperature: float = 0.7


@dataclass(frozen=True)
class Completion:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str = ""


class CompletionBackend(Protocol):
    """Protocol describing completion behaviour."""

    def complete(
        self,
        messages: Sequence[Message],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = True,
    ) -> Completion:
        """Return the model output for the chat ``messages``."""


def _rejects_temperature(exc: openai.BadRequestError) -> bool:
    if getattr(exc, "param", None) == "temperature":
        return True
    return "temperature" in str(exc).lower() and "unsupported" in str(exc).lower()


class OpenAICompletionBackend:
    """Chat completions through the OpenAI API with JSON mode."""

    def __init__(
        self,
        config: CompletionConfig | None = None,
        *,
        client: OpenAI | None = None,
        caller: GatewayCaller | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> None:
        self._config = config or CompletionConfig()
        self._caller = caller or GatewayCaller(name="completion")
        self._client = client or build_openai_client(api_key, base_url=base_url, policy=self._caller.policy)

    def complete(
        self,
        messages: Sequence[Message],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = True,
    ) -> Completion:
        params: dict[str, Any] = {
            "model": self._config.model,
            "messages": [dict(message) for message in messages],
            "max_completion_tokens": max_tokens or self._config.max_tokens,
        }
        if json_mode:
            params["response_format"] = {"type": "json_object"}
        effective_temperature = self._config.temperature if temperature is None else temperature

        def create() -> Any:
            try:
                return self._client.chat.completions.create(temperature=effective_temperature, **params)
            except openai.BadRequestError as exc:
                if not _rejects_temperature(exc):
                    raise
                LOGGER.warning("Model %s rejected temperature, retrying without it", self._config.model)
                return self._client.chat.completions.create(**params)

        response = self._caller.call(create)
        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        return Completion(
            text=text,
            prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            model=getattr(response, "model", None) or self._config.model,
        )


class TemplateCompletionBackend:
    """Deterministic JSON answers used for tests and offline environments.

    Recommends the first candidates listed in the prompt and never invents
    anything that is not in the messages.
    """

    def __init__(self, max_products: int = 2) -> None:
        self._max_products = max_products

    def complete(
        self,
        messages: Sequence[Message],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = True,
    ) -> Completion:
        prompt = "\n".join(message.get("content", "") for message in messages)
        candidates = list(CANDIDATE_LINE_RE.finditer(prompt))[: self._max_products]
        products = [
            {
                "id": match.group("item_id"),
                "url": match.group("url"),
                "reason": f"{match.group('name').strip()} matches the question",
                "confidence": round(0.8 - 0.1 * index, 2),
            }
            for index, match in enumerate(candidates)
        ]
        if products:
            reply = "ขอบคุณที่สอบถามครับ แนะนำ " + " ".join(
                f"{match.group('name').strip()} {match.group('url')}" for match in candidates
            )
        else:
            reply = "ขอบคุณที่สอบถามครับ ลองดูรายละเอียดในวิดีโอได้เลยครับ"
        text = json.dumps({"reply_text": reply, "products": products}, ensure_ascii=False)
        prompt_tokens = max(len(prompt) // 4, 1)
        return Completion(text=text, prompt_tokens=prompt_tokens, completion_tokens=max(len(text) // 4, 1), model="template")


__all__ = [
    "CANDIDATE_LINE",
    "CANDIDATE_LINE_RE",
    "Completion",
    "CompletionBackend",
    "CompletionConfig",
    "OpenAICompletionBackend",
    "TemplateCompletionBackend",
]
