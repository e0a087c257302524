"""OpenAI-compatible content generator.

Lets a client speaking canonical turns use any chat-completions backend
(Ollama, OpenAI, OpenRouter, vLLM, ...). Per request:

1. Best-effort history compression (failures are logged, never raised)
2. Curated history + new input -> wire messages
3. Token budget selection
4. POST, retrying once with a 70% output allowance on a budget error
5. Wire response -> canonical response
6. Best-effort history recording
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from chatbridge.budget.estimator import TokenEstimator
from chatbridge.budget.optimizer import BudgetOptimizer, OptimizationResult, lookup_budget
from chatbridge.config import Settings
from chatbridge.content.schemas import (
    CompressionResult,
    ContentInput,
    GenerationResponse,
    ToolGroup,
    Turn,
    extract_text,
    normalize_contents,
)
from chatbridge.conversation.compression import ConversationCompressor
from chatbridge.conversation.history import ConversationHistory
from chatbridge.errors import (
    BackendError,
    CompressionError,
    ChatBridgeError,
    TransportError,
    classify_backend_error,
    extract_target_address,
    is_timeout_error,
)
from chatbridge.events import ApiError, ApiRequest, ApiResponse, TelemetryEvent, TelemetrySink
from chatbridge.api.retry import RetryPolicy
from chatbridge.wire.dialects import rewrite_request_body
from chatbridge.wire.models import ToolSpec
from chatbridge.wire.streaming import decode_stream
from chatbridge.wire.translator import response_from_wire, to_wire, to_wire_tools

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
EMBEDDINGS_PATH = "/v1/embeddings"


@runtime_checkable
class ContentGenerator(Protocol):
    """What every backend adapter must provide."""

    async def generate_content(
        self, contents: ContentInput, **kwargs: Any
    ) -> GenerationResponse: ...

    def generate_content_stream(
        self, contents: ContentInput, **kwargs: Any
    ) -> AsyncGenerator[GenerationResponse, None]: ...

    async def count_tokens(self, model: str, contents: ContentInput) -> int | None: ...

    async def embed_content(self, contents: ContentInput, model: str | None = None) -> list[float]: ...


@runtime_checkable
class ConversationCapable(Protocol):
    """Optional capability: the generator keeps its own conversation history."""

    @property
    def history(self) -> ConversationHistory: ...

    def compressor_for(self, history: ConversationHistory) -> ConversationCompressor: ...

    async def count_tokens(self, model: str, contents: ContentInput) -> int | None: ...


@dataclass(frozen=True)
class GeneratorConfig:
    """Immutable connection and sampling parameters."""

    base_url: str
    model: str
    api_key: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    proxy: str | None = None
    debug: bool = False
    max_output_tokens: int = 4096
    temperature: float = 0.7
    top_p: float = 0.9
    timeout_connect: float = 10.0
    timeout_read: float = 120.0
    compression_enabled: bool = True
    compression_threshold: float = 0.7
    compression_preserve: float = 0.3

    @classmethod
    def from_settings(cls, settings: Settings) -> GeneratorConfig:
        return cls(
            base_url=settings.resolved_base_url,
            model=settings.resolved_model,
            api_key=settings.resolved_api_key or None,
            headers=dict(settings.extra_headers),
            proxy=settings.proxy,
            debug=settings.debug,
            max_output_tokens=settings.max_tokens,
            temperature=settings.temperature,
            top_p=settings.top_p,
            timeout_connect=settings.api_timeout_connect,
            timeout_read=settings.api_timeout_read,
            compression_enabled=settings.compression_enabled,
            compression_threshold=settings.compression_threshold,
            compression_preserve=settings.compression_preserve,
        )

    @property
    def root_url(self) -> str:
        """Base URL without a trailing ``/v1`` so endpoints aren't doubled."""
        base = self.base_url.rstrip("/")
        return base[:-3] if base.endswith("/v1") else base


@dataclass
class _PreparedRequest:
    turns: list[Turn]
    fresh: list[Turn]
    system_instruction: str | None
    tools: list[ToolSpec]
    model: str
    max_output_tokens: int
    temperature: float
    top_p: float
    # Input budget for message selection; defaults to the output allowance
    input_budget: int | None = None


class OpenAICompatibleGenerator:
    """Canonical-content generator backed by a chat-completions endpoint."""

    def __init__(
        self,
        config: GeneratorConfig,
        *,
        history: ConversationHistory | None = None,
        telemetry: TelemetrySink | None = None,
        optimizer: BudgetOptimizer | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._history = history if history is not None else ConversationHistory()
        self._telemetry = telemetry
        self._optimizer = optimizer or BudgetOptimizer()
        self._retry = retry_policy or RetryPolicy()
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @property
    def config(self) -> GeneratorConfig:
        return self._config

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def estimator(self) -> TokenEstimator:
        return self._optimizer.estimator

    async def start(self) -> None:
        """Create the httpx client with auth, headers and timeouts."""
        cfg = self._config
        headers: dict[str, str] = {"content-type": "application/json", **cfg.headers}
        if cfg.api_key:
            headers["authorization"] = f"Bearer {cfg.api_key}"

        timeout = httpx.Timeout(
            connect=cfg.timeout_connect,
            read=cfg.timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        extra: dict[str, Any] = {}
        if self._transport is not None:
            extra["transport"] = self._transport
        elif cfg.proxy:
            extra["proxy"] = cfg.proxy

        self._http = httpx.AsyncClient(
            base_url=cfg.root_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
            **extra,
        )
        logger.info(
            "httpx client initialized (%s, model=%s, auth: %s)",
            cfg.root_url, cfg.model, "Bearer token" if cfg.api_key else "none",
        )

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> OpenAICompatibleGenerator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _client(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    def compressor_for(self, history: ConversationHistory) -> ConversationCompressor:
        return ConversationCompressor(history, counter=self, generator=self)

    def get_conversation_history(self, curated: bool = False) -> list[Turn]:
        return self._history.get_history(curated)

    def add_to_conversation_history(self, turn: Turn) -> None:
        self._history.add_history(turn)

    def clear_conversation_history(self) -> None:
        self._history.clear_history()

    async def try_compress_conversation(
        self, force: bool = False, history: ConversationHistory | None = None
    ) -> CompressionResult | None:
        """Compress on behalf of a caller. Errors propagate."""
        target = history if history is not None else self._history
        return await self.compressor_for(target).try_compress(
            self._config.model,
            force=force,
            threshold=self._config.compression_threshold,
            preserve_fraction=self._config.compression_preserve,
        )

    async def _maybe_compress(self, history: ConversationHistory, model: str) -> None:
        if not self._config.compression_enabled:
            return
        try:
            result = await self.compressor_for(history).try_compress(
                model,
                threshold=self._config.compression_threshold,
                preserve_fraction=self._config.compression_preserve,
            )
        except Exception as e:
            logger.warning("History compression failed, continuing uncompressed: %s", e)
            return
        if result:
            logger.info(
                "History compressed before request: %d -> %d tokens",
                result.original_token_count, result.new_token_count,
            )

    def _record(
        self,
        history: ConversationHistory,
        fresh: list[Turn],
        outputs: list[Turn],
    ) -> None:
        if not fresh:
            logger.debug("No new input to record")
            return
        try:
            if len(fresh) == 1:
                history.record_history(fresh[0], outputs)
            else:
                history.record_history(fresh[-1], outputs, external_history=fresh)
        except Exception as e:
            logger.warning("Failed to record conversation turn: %s", e)

    @staticmethod
    def _merge_with_history(
        history: ConversationHistory, new_turns: list[Turn]
    ) -> tuple[list[Turn], list[Turn]]:
        """Return (turns to send, turns not yet in history).

        Callers may pass either just the new input or the whole
        conversation including what history already holds.
        """
        curated = history.get_history(curated=True)
        if curated and new_turns[: len(curated)] == curated:
            return new_turns, new_turns[len(curated):]
        return curated + new_turns, new_turns

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    async def _prepare(
        self,
        contents: ContentInput,
        history: ConversationHistory | None,
        system_instruction: ContentInput | None,
        tools: list[ToolGroup] | None,
        model: str | None,
        max_output_tokens: int | None,
        temperature: float | None,
        top_p: float | None,
        track_history: bool = True,
    ) -> _PreparedRequest:
        model = model or self._config.model
        new_turns = normalize_contents(contents)
        if track_history and history is not None:
            await self._maybe_compress(history, model)
            turns, fresh = self._merge_with_history(history, new_turns)
        else:
            turns, fresh = new_turns, []
        return _PreparedRequest(
            turns=turns,
            fresh=fresh,
            system_instruction=extract_text(system_instruction),
            tools=to_wire_tools(tools),
            model=model,
            max_output_tokens=max_output_tokens or self._config.max_output_tokens,
            temperature=self._config.temperature if temperature is None else temperature,
            top_p=self._config.top_p if top_p is None else top_p,
        )

    def _build_api_payload(
        self, request: _PreparedRequest, attempt: int, stream: bool
    ) -> tuple[dict[str, Any], OptimizationResult]:
        """Build the chat-completions body for one attempt.

        Shared by the streaming and non-streaming paths to avoid divergence.
        """
        allowance = self._retry.output_allowance(request.max_output_tokens, attempt)
        messages = to_wire(request.turns, request.system_instruction)
        selection = self._optimizer.select(
            messages, request.input_budget or allowance, tools=request.tools, model=request.model
        )
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [m.to_dict() for m in selection.messages],
            "max_tokens": allowance,
            "temperature": request.temperature,
            "top_p": request.top_p,
            "stream": stream,
        }
        if request.tools:
            payload["tools"] = [t.to_dict() for t in request.tools]
            payload["tool_choice"] = "auto"
        return rewrite_request_body(self._config.base_url, payload), selection

    # ------------------------------------------------------------------
    # Telemetry and error shaping
    # ------------------------------------------------------------------

    def _emit(self, event: TelemetryEvent) -> None:
        if self._telemetry is None:
            return
        try:
            self._telemetry.record(event)
        except Exception as e:
            logger.debug("Telemetry record failed for %s: %s", type(event).__name__, e)

    def _transport_error(self, error: httpx.HTTPError, context: str) -> TransportError:
        if is_timeout_error(error):
            target = extract_target_address(error) or self._config.root_url
            if self._config.debug:
                logger.debug("[DEBUG] %s - timeout to %s: %s", context, target, error)
            else:
                logger.warning("%s timed out talking to %s: %s", context, target, error)
        else:
            logger.error("%s transport error: %s", context, error)
        return TransportError(f"{context} failed: {error}")

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _post_completion(
        self, payload: dict[str, Any], selection: OptimizationResult
    ) -> GenerationResponse:
        http = self._client()
        self._emit(ApiRequest(model=payload["model"], stream=False,
                              messages=len(payload["messages"]), max_tokens=payload["max_tokens"]))
        try:
            response = await http.post(CHAT_COMPLETIONS_PATH, json=payload)
        except httpx.HTTPError as e:
            error = self._transport_error(e, "Chat completion")
            self._emit(ApiError(model=payload["model"], error=str(error)))
            raise error from e

        if response.status_code >= 400:
            error = classify_backend_error(response.status_code, response.text)
            self._emit(ApiError(model=payload["model"], error=str(error),
                                status=response.status_code))
            raise error

        try:
            result = response_from_wire(response.json())
        except ValueError as e:
            error = BackendError(response.status_code, f"Malformed completion response: {e}")
            self._emit(ApiError(model=payload["model"], error=str(error)))
            raise error from e
        if result.usage and result.usage.prompt_token_count:
            self.estimator.calibrate(
                selection.estimated_tokens + selection.tool_tokens,
                result.usage.prompt_token_count,
            )
        self._emit(ApiResponse(model=result.model_version or payload["model"],
                               usage=result.usage.model_dump() if result.usage else None))
        return result

    async def generate_content(
        self,
        contents: ContentInput,
        *,
        system_instruction: ContentInput | None = None,
        tools: list[ToolGroup] | None = None,
        model: str | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        history: ConversationHistory | None = None,
    ) -> GenerationResponse:
        """Send one non-streamed request and record the exchange in history."""
        history = history if history is not None else self._history
        request = await self._prepare(
            contents, history, system_instruction, tools, model,
            max_output_tokens, temperature, top_p,
        )

        async def attempt(n: int) -> GenerationResponse:
            payload, selection = self._build_api_payload(request, n, stream=False)
            return await self._post_completion(payload, selection)

        result = await self._retry.execute(attempt)
        self._record(history, request.fresh, [result.turn])
        return result

    async def generate_content_stream(
        self,
        contents: ContentInput,
        *,
        system_instruction: ContentInput | None = None,
        tools: list[ToolGroup] | None = None,
        model: str | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        history: ConversationHistory | None = None,
    ) -> AsyncGenerator[GenerationResponse, None]:
        """Stream a response. Text arrives as it is generated; tool calls at the end.

        The budget retry only applies before anything was yielded. The
        exchange is recorded once the stream completes.
        """
        history = history if history is not None else self._history
        request = await self._prepare(
            contents, history, system_instruction, tools, model,
            max_output_tokens, temperature, top_p,
        )
        http = self._client()
        collected: list[GenerationResponse] = []

        attempt = 0
        while True:
            payload, _ = self._build_api_payload(request, attempt, stream=True)
            self._emit(ApiRequest(model=request.model, stream=True,
                                  messages=len(payload["messages"]), max_tokens=payload["max_tokens"]))
            error: ChatBridgeError | None = None
            try:
                async with http.stream("POST", CHAT_COMPLETIONS_PATH, json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        error = classify_backend_error(response.status_code, body)
                    else:
                        async for item in decode_stream(response.aiter_bytes()):
                            collected.append(item)
                            yield item
            except httpx.HTTPError as e:
                error = self._transport_error(e, "Streaming chat completion")
                error.__cause__ = e

            if error is None:
                break
            self._emit(ApiError(model=request.model, error=str(error),
                                status=getattr(error, "status_code", None)))
            if collected or not self._retry.should_retry(error, attempt):
                raise error
            logger.warning("Stream attempt %d rejected, retrying with a smaller budget: %s",
                           attempt + 1, error)
            await self._retry.wait(attempt)
            attempt += 1

        self._emit(ApiResponse(model=request.model, stream=True, chunks=len(collected)))
        self._record(history, request.fresh, [item.turn for item in collected])

    async def generate_summary(
        self, model: str, contents: list[Turn], system_instruction: str
    ) -> GenerationResponse:
        """One-off generation outside any conversation (used for compression).

        Every turn must reach the summarizer: the prefix is budgeted against
        the whole context window, and CompressionError is raised rather than
        summarizing a prefix the optimizer had to drop or truncate.
        """
        request = await self._prepare(
            contents, None, system_instruction, None, model, None, None, None,
            track_history=False,
        )
        request.input_budget = lookup_budget(request.model).max_context_tokens

        async def attempt(n: int) -> GenerationResponse:
            payload, selection = self._build_api_payload(request, n, stream=False)
            if selection.dropped or selection.truncated:
                raise CompressionError(
                    f"Summary input does not fit {request.model}: "
                    f"{selection.dropped} dropped, {selection.truncated} truncated "
                    f"of {len(request.turns)} turns"
                )
            return await self._post_completion(payload, selection)

        return await self._retry.execute(attempt)

    # ------------------------------------------------------------------
    # Tokens and embeddings
    # ------------------------------------------------------------------

    async def count_tokens(self, model: str, contents: ContentInput) -> int | None:
        """Heuristic token count of ``contents`` as they would go on the wire."""
        messages = to_wire(normalize_contents(contents))
        return self.estimator.estimate_messages(messages)

    async def embed_content(self, contents: ContentInput, model: str | None = None) -> list[float]:
        text = extract_text(contents) or ""
        http = self._client()
        try:
            response = await http.post(
                EMBEDDINGS_PATH,
                json={"model": model or self._config.model, "input": text},
            )
        except httpx.HTTPError as e:
            raise self._transport_error(e, "Embedding") from e

        if response.status_code >= 400:
            raise classify_backend_error(response.status_code, response.text)

        data = response.json().get("data") or []
        embedding = data[0].get("embedding") if data else None
        if not embedding:
            raise BackendError(response.status_code, "No embedding returned from API")
        return embedding
