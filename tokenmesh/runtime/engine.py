from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from tokenmesh.config.load_config import DispatchConfig
from tokenmesh.llm.openai_compat import LLMConfigError, OpenAICompatibleChatClient
from tokenmesh.storage.sqlite_store import ExecutionRecord, WorkerRecord


_SUMMARY_MAX_CHARS = 500


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    tokens_consumed: int
    output_summary: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ExecutionEngine(Protocol):
    name: str

    def execute(self, execution: ExecutionRecord, worker: WorkerRecord) -> ExecutionResult: ...


def _prompt_text(payload: dict[str, Any]) -> str:
    prompt = payload.get("prompt")
    if isinstance(prompt, str):
        return prompt
    messages = payload.get("messages")
    if isinstance(messages, list):
        return "\n".join(str(m.get("content") or "") for m in messages if isinstance(m, dict))
    return ""


def _summarize(text: str) -> str:
    text = text.strip()
    if len(text) <= _SUMMARY_MAX_CHARS:
        return text
    return text[: _SUMMARY_MAX_CHARS - 3] + "..."


class DryRunEngine:
    """Deterministic engine for local runs and tests: no network, predictable usage.

    Usage is `max(min_tokens, words * tokens_per_word)`. A payload carrying
    `simulate_error` fails after consuming the same amount.
    """

    name = "dry_run"

    def __init__(self, *, tokens_per_word: int = 2, min_tokens: int = 10) -> None:
        self.tokens_per_word = int(tokens_per_word)
        self.min_tokens = int(min_tokens)

    def estimate(self, payload: dict[str, Any]) -> int:
        words = len(_prompt_text(payload).split())
        return max(self.min_tokens, words * self.tokens_per_word)

    def execute(self, execution: ExecutionRecord, worker: WorkerRecord) -> ExecutionResult:
        tokens = self.estimate(execution.payload)
        simulated = execution.payload.get("simulate_error")
        if simulated:
            return ExecutionResult(
                success=False,
                tokens_consumed=tokens,
                error=str(simulated),
                metadata={"engine": self.name},
            )
        words = len(_prompt_text(execution.payload).split())
        return ExecutionResult(
            success=True,
            tokens_consumed=tokens,
            output_summary=f"[dry-run] {worker.worker_type}@{worker.worker_id} processed {words} words",
            metadata={"engine": self.name},
        )


class OpenAICompatibleEngine:
    """Runs a chat completion on the endpoint a worker advertises.

    Worker metadata may carry `base_url` and `model`; otherwise the client
    falls back to OPENAI_API_BASE / LLM_MODEL.
    """

    name = "openai"

    def __init__(self, *, api_key: str | None = None, timeout_s: float | None = 120.0) -> None:
        self._api_key = api_key
        self._timeout_s = timeout_s

    def _client_for(self, worker: WorkerRecord) -> OpenAICompatibleChatClient:
        meta = worker.metadata or {}
        return OpenAICompatibleChatClient(
            base_url=str(meta.get("base_url") or "") or None,
            model=str(meta.get("model") or "") or None,
            api_key=self._api_key,
            timeout_s=self._timeout_s,
        )

    def execute(self, execution: ExecutionRecord, worker: WorkerRecord) -> ExecutionResult:
        payload = execution.payload
        messages = payload.get("messages")
        if not isinstance(messages, list) or not messages:
            messages = []
            system = payload.get("system")
            if isinstance(system, str) and system.strip():
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": _prompt_text(payload)})

        try:
            client = self._client_for(worker)
        except LLMConfigError as e:
            return ExecutionResult(success=False, tokens_consumed=0, error=str(e), metadata={"engine": self.name})

        try:
            result = client.chat_messages(
                messages=messages,
                temperature=float(payload.get("temperature", 0.7)),
            )
        except Exception as e:
            # Provider errors are an execution outcome, not a dispatcher failure.
            return ExecutionResult(
                success=False,
                tokens_consumed=0,
                error=f"{type(e).__name__}: {e}",
                metadata={"engine": self.name, "model": client.model},
            )

        return ExecutionResult(
            success=True,
            tokens_consumed=result.total_tokens,
            output_summary=_summarize(result.content),
            metadata={
                "engine": self.name,
                "model": client.model,
                "prompt_tokens": result.prompt_tokens,
                "completion_tokens": result.completion_tokens,
            },
        )


def build_engine(config: DispatchConfig) -> ExecutionEngine:
    if config.engine == "openai":
        return OpenAICompatibleEngine()
    return DryRunEngine(tokens_per_word=config.dry_run_tokens_per_word, min_tokens=config.dry_run_min_tokens)
