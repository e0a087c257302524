"""REST API for the chat bridge.

Endpoints:
  POST   /chat                              - Send message, get response
  POST   /chat/stream                       - SSE streaming chat
  GET    /conversation/{session_id}         - Session history (?curated=true)
  DELETE /conversation/{session_id}         - Drop a session
  POST   /conversation/{session_id}/command - Run a token optimization command
  GET    /health                            - Health check

Each session owns one ConversationHistory. Requests against the same
session are serialized by its lock; the registry evicts the least
recently used session once ``max_sessions`` is reached.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from chatbridge.api.commands import optimize_tokens, parse_command
from chatbridge.api.generator import OpenAICompatibleGenerator
from chatbridge.config import Settings
from chatbridge.content.schemas import GenerationResponse, ToolGroup
from chatbridge.conversation.history import ConversationHistory
from chatbridge.errors import BackendError, BudgetExhausted, ChatBridgeError, TransportError
from chatbridge.events import session_scope

logger = logging.getLogger(__name__)


@dataclass
class Session:
    session_id: str
    history: ConversationHistory = field(default_factory=ConversationHistory)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SessionRegistry:
    """LRU map of session id -> Session."""

    def __init__(self, max_sessions: int = 100) -> None:
        self._sessions: OrderedDict[str, Session] = OrderedDict()
        self._max_sessions = max_sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is not None:
            self._sessions.move_to_end(session_id)
        return session

    def get_or_create(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            session = Session(session_id)
            self._sessions[session_id] = session
            while len(self._sessions) > self._max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.info("Evicted idle session %s", evicted)
        return session

    def remove(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None


def _response_payload(result: GenerationResponse, session_id: str) -> dict[str, Any]:
    return {
        "response": result.text,
        "session_id": session_id,
        "finish_reason": result.finish_reason,
        "tool_calls": [c.model_dump(exclude={"type"}) for c in result.turn.tool_calls],
        "usage": result.usage.model_dump() if result.usage else None,
        "model": result.model_version,
    }


def _error_response(error: Exception) -> JSONResponse:
    if isinstance(error, (ValueError, PydanticValidationError)):
        return JSONResponse({"error": str(error)}, status_code=400)
    if isinstance(error, BackendError):
        return JSONResponse(
            {"error": str(error), "backend_status": error.status_code}, status_code=502
        )
    if isinstance(error, BudgetExhausted):
        return JSONResponse({"error": str(error)}, status_code=413)
    if isinstance(error, TransportError):
        return JSONResponse({"error": str(error)}, status_code=504)
    if isinstance(error, ChatBridgeError):
        return JSONResponse({"error": str(error)}, status_code=502)
    return JSONResponse({"error": str(error)}, status_code=500)


def _generation_kwargs(body: dict[str, Any]) -> dict[str, Any]:
    """Optional per-request overrides from a chat body."""
    kwargs: dict[str, Any] = {}
    if body.get("system_instruction"):
        kwargs["system_instruction"] = body["system_instruction"]
    if body.get("model"):
        kwargs["model"] = body["model"]
    if body.get("max_tokens") is not None:
        kwargs["max_output_tokens"] = int(body["max_tokens"])
    if body.get("temperature") is not None:
        kwargs["temperature"] = float(body["temperature"])
    if body.get("top_p") is not None:
        kwargs["top_p"] = float(body["top_p"])
    if body.get("tools"):
        kwargs["tools"] = [ToolGroup.model_validate(t) for t in body["tools"]]
    return kwargs


def create_app(
    generator: OpenAICompatibleGenerator,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""
    sessions = SessionRegistry(settings.max_sessions)

    async def _read_chat_body(request: Request) -> tuple[dict[str, Any] | None, JSONResponse | None]:
        try:
            body = await request.json()
        except Exception:
            return None, JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict) or not body.get("message"):
            return None, JSONResponse({"error": "Missing required field: message"}, status_code=400)
        return body, None

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get a response."""
        body, error = await _read_chat_body(request)
        if error:
            return error

        session_id = body.get("session_id") or str(uuid4())
        session = sessions.get_or_create(session_id)
        try:
            kwargs = _generation_kwargs(body)
            async with session.lock:
                with session_scope(session_id):
                    result = await generator.generate_content(
                        body["message"], history=session.history, **kwargs
                    )
        except Exception as e:
            logger.error("Chat error: %s", e)
            return _error_response(e)
        return JSONResponse(_response_payload(result, session_id))

    async def chat_stream(request: Request) -> StreamingResponse:
        """POST /chat/stream - SSE streaming chat."""
        body, error = await _read_chat_body(request)
        if error:
            return error

        session_id = body.get("session_id") or str(uuid4())
        session = sessions.get_or_create(session_id)
        try:
            kwargs = _generation_kwargs(body)
        except Exception as e:
            return _error_response(e)

        async def event_generator():
            try:
                async with session.lock:
                    with session_scope(session_id):
                        async for item in generator.generate_content_stream(
                            body["message"], history=session.history, **kwargs
                        ):
                            event_data = {"type": "chunk", **_response_payload(item, session_id)}
                            yield f"data: {json.dumps(event_data)}\n\n"
                yield f"data: {json.dumps({'type': 'done', 'session_id': session_id})}\n\n"
            except Exception as e:
                logger.error("Stream error: %s", e)
                error_data = json.dumps({"type": "error", "text": str(e)})
                yield f"data: {error_data}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /conversation/{session_id} - Raw or curated history."""
        session_id = request.path_params["session_id"]
        session = sessions.get(session_id)
        if session is None:
            return JSONResponse({"error": "Unknown session"}, status_code=404)
        curated = request.query_params.get("curated", "false").lower() in ("1", "true", "yes")
        turns = session.history.get_history(curated)
        return JSONResponse({
            "session_id": session_id,
            "curated": curated,
            "history": [t.model_dump(mode="json") for t in turns],
            "total": len(turns),
        })

    async def delete_conversation(request: Request) -> JSONResponse:
        """DELETE /conversation/{session_id} - End a conversation."""
        session_id = request.path_params["session_id"]
        session = sessions.get(session_id)
        if session is None:
            return JSONResponse({"error": "Unknown session"}, status_code=404)
        async with session.lock:
            session.history.clear_history()
            sessions.remove(session_id)
        return JSONResponse({"status": "ended", "session_id": session_id})

    async def run_command(request: Request) -> JSONResponse:
        """POST /conversation/{session_id}/command - Token optimization command."""
        session_id = request.path_params["session_id"]
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        try:
            options = parse_command(body.get("command", ""))
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        session = sessions.get_or_create(session_id)
        model = body.get("model") or generator.config.model
        try:
            async with session.lock:
                output = await optimize_tokens(generator, model, options, session.history)
        except Exception as e:
            logger.error("Command error: %s", e)
            return _error_response(e)
        return JSONResponse({"session_id": session_id, "output": output})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({
            "status": "healthy",
            "model": generator.config.model,
            "sessions": len(sessions),
        })

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/conversation/{session_id}", get_conversation, methods=["GET"]),
        Route("/conversation/{session_id}", delete_conversation, methods=["DELETE"]),
        Route("/conversation/{session_id}/command", run_command, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    app = Starlette(**kwargs)
    app.state.sessions = sessions
    return app
