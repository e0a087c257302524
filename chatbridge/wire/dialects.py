"""Per-backend request body rewriting.

Canonical tool schemas use upper-case type names ("OBJECT", "STRING") and
string-typed length constraints ("1"). Strict JSON-schema backends reject
both, so their bodies are normalized before sending.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

_INTEGER_KEYWORDS = frozenset({
    "minItems",
    "maxItems",
    "minLength",
    "maxLength",
    "minProperties",
    "maxProperties",
})


def normalize_schema(schema: Any) -> Any:
    """Lower-case ``type`` tokens and coerce length constraints to ints, recursively."""
    if isinstance(schema, list):
        return [normalize_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    result: dict[str, Any] = {}
    for key, value in schema.items():
        if key == "type" and isinstance(value, str):
            result[key] = value.lower()
        elif key == "type" and isinstance(value, list):
            result[key] = [v.lower() if isinstance(v, str) else v for v in value]
        elif key in _INTEGER_KEYWORDS and isinstance(value, str):
            try:
                result[key] = int(value)
            except ValueError:
                logger.warning("Dropping non-numeric %s=%r from tool schema", key, value)
        else:
            result[key] = normalize_schema(value)
    return result


def _normalize_tool_schemas(body: dict[str, Any]) -> dict[str, Any]:
    for tool in body.get("tools") or []:
        function = tool.get("function") or {}
        if "parameters" in function:
            function["parameters"] = normalize_schema(function["parameters"])
    return body


@dataclass(frozen=True)
class Dialect:
    name: str
    hosts: tuple[str, ...]
    rewrite: Callable[[dict[str, Any]], dict[str, Any]]

    def matches(self, base_url: str) -> bool:
        host = urlparse(base_url).netloc.lower() or base_url.lower()
        return any(host == h or host.endswith("." + h) or host.startswith(h) for h in self.hosts)


DIALECTS: tuple[Dialect, ...] = (
    Dialect(
        name="strict-json-schema",
        hosts=("api.openai.com", "openrouter.ai", "api.deepseek.com", "api.groq.com"),
        rewrite=_normalize_tool_schemas,
    ),
)


def rewrite_request_body(base_url: str, body: dict[str, Any]) -> dict[str, Any]:
    """Apply every dialect matching ``base_url`` to a copy of ``body``."""
    matching = [d for d in DIALECTS if d.matches(base_url)]
    if not matching:
        return body
    rewritten = copy.deepcopy(body)
    for dialect in matching:
        rewritten = dialect.rewrite(rewritten)
        logger.debug("Applied wire dialect %s for %s", dialect.name, base_url)
    return rewritten
