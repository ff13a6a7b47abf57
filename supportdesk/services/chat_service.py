"""LLM chat service wrapper using LangChain ChatOpenAI for classification and reply drafting."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import httpx
from langchain_openai import ChatOpenAI
from langchain_core.prompts import ChatPromptTemplate


@dataclass
class TokenUsage:
    """Token accounting reported by the provider for one call."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ChatTextResult:
    """Plain-text completion plus usage."""

    text: str
    usage: TokenUsage
    model: str


@dataclass
class ChatJsonResult:
    """Parsed JSON object plus usage for one JSON-mode completion."""

    data: dict[str, Any]
    usage: TokenUsage
    model: str


def _usage_from_message(message: Any) -> TokenUsage:
    meta = getattr(message, "usage_metadata", None) or {}
    input_tokens = int(meta.get("input_tokens") or 0)
    output_tokens = int(meta.get("output_tokens") or 0)
    total = int(meta.get("total_tokens") or (input_tokens + output_tokens))
    return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total)


class ChatService:
    """Encapsulates chat-completion calls and availability checks."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str | None,
        model: str,
        provider_name: str = "openai",
        max_output_tokens: int = 800,
        temperature: float = 0.1,
    ) -> None:
        self._provider_name = provider_name.strip().lower() or "openai"
        self._model = model
        self._max_output_tokens = max(1, int(max_output_tokens))
        self._llm: ChatOpenAI | None = None
        self._http_client: httpx.Client | None = None
        if api_key:
            # Ignore process-wide proxy env vars so local dev shells with
            # placeholder proxy settings do not break outbound model calls.
            self._http_client = httpx.Client(trust_env=False)
            self._llm = ChatOpenAI(
                api_key=api_key,
                base_url=base_url,
                model=model,
                http_client=self._http_client,
                max_tokens=self._max_output_tokens,
                temperature=temperature,
                max_retries=0,
            )

    @property
    def is_available(self) -> bool:
        """Return True when chat generation can be executed."""

        return self._llm is not None

    @property
    def model(self) -> str:
        """Expose the configured model name for step logging and cost tracking."""

        return self._model

    @property
    def provider_name(self) -> str:
        return self._provider_name

    def _require_llm(self) -> ChatOpenAI:
        if self._llm is None:
            raise RuntimeError(
                f"Chat service '{self._provider_name}' is not configured (missing OPENAI_API_KEY)"
            )
        return self._llm

    @staticmethod
    def _prompt() -> ChatPromptTemplate:
        return ChatPromptTemplate.from_messages([
            ("system", "{system}"),
            ("human", "{user}"),
        ])

    def complete(self, *, system_prompt: str, user_prompt: str) -> ChatTextResult:
        """Run one chat completion and return text with token usage."""

        chain = self._prompt() | self._require_llm()
        result = chain.invoke({"system": system_prompt, "user": user_prompt})
        return ChatTextResult(
            text=(result.content or "").strip(),
            usage=_usage_from_message(result),
            model=self._model,
        )

    def generate(self, *, system_prompt: str, user_prompt: str) -> str:
        """Run one chat completion and return plain text output."""

        return self.complete(system_prompt=system_prompt, user_prompt=user_prompt).text

    def generate_json(self, *, system_prompt: str, user_prompt: str) -> ChatJsonResult:
        """Run one JSON-mode completion and parse the returned object.

        Raises ValueError when the provider returns something that is not a JSON object.
        """

        llm = self._require_llm().bind(response_format={"type": "json_object"})
        chain = self._prompt() | llm
        result = chain.invoke({"system": system_prompt, "user": user_prompt})
        raw = (result.content or "").strip()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Model returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("Model returned JSON that is not an object")
        return ChatJsonResult(data=data, usage=_usage_from_message(result), model=self._model)
