"""Tool-call extraction from model output.

Parsers are tried in order and the first one that yields at least one call
wins:

1. ``StrictJsonParser``     the whole text is JSON
2. ``FencedJsonParser``     JSON inside a markdown code fence
3. ``RegexJsonParser``      the outermost ``{...}`` span
4. ``KeywordInferenceParser`` phrasing like "use the search tool on the github server"

Accepted JSON shapes::

    {"tool_calls": [{"server": "github", "tool": "search", "arguments": {...}}]}
    {"tool_calls": [{"function": {"name": "github.search", "arguments": "{...}"}}]}
    {"server": "github", "tool": "search", "arguments": {...}}
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```[ \t]*([\w+#.-]*)[ \t]*\n?(.*?)```", re.DOTALL)
_OBJECT_SPAN_RE = re.compile(r"\{.*\}", re.DOTALL)
_KEYWORD_RE = re.compile(
    r"\b(?:use|call|invoke|run)\s+(?:the\s+)?[`'\"]?(?P<tool>[\w.-]+)[`'\"]?\s+tool\s+"
    r"(?:on|from|of|in|via)\s+(?:the\s+)?[`'\"]?(?P<server>[\w.-]+)[`'\"]?\s+(?:mcp\s+)?server"
    r"(?:\s+with\s+(?P<args>\{.*\}))?",
    re.IGNORECASE | re.DOTALL,
)
_NAME_SEPARATORS = (".", "__", "/")


@dataclass(frozen=True)
class ToolCall:
    server: str
    tool: str
    arguments: Dict[str, Any] = field(default_factory=dict)


def _coerce_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str) and raw.strip():
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _split_qualified(name: str) -> tuple[str, str]:
    for sep in _NAME_SEPARATORS:
        if sep in name:
            server, tool = name.split(sep, 1)
            if server and tool:
                return server, tool
    return "", name


def _call_from_item(item: Any) -> Optional[ToolCall]:
    if not isinstance(item, dict):
        return None
    function = item.get("function")
    if isinstance(function, dict):
        name = str(function.get("name") or "").strip()
        args = _coerce_arguments(function.get("arguments"))
        server = str(item.get("server") or item.get("server_name") or "").strip()
    else:
        name = str(item.get("tool") or item.get("tool_name") or item.get("name") or "").strip()
        args = _coerce_arguments(item.get("arguments", item.get("args", item.get("input"))))
        server = str(item.get("server") or item.get("server_name") or item.get("mcp_server") or "").strip()
    if not name:
        return None
    if not server:
        server, name = _split_qualified(name)
    return ToolCall(server=server, tool=name, arguments=args)


def tool_calls_from_obj(obj: Any) -> Optional[List[ToolCall]]:
    items: Sequence[Any]
    if isinstance(obj, dict) and isinstance(obj.get("tool_calls"), list):
        items = obj["tool_calls"]
    elif isinstance(obj, dict) and (obj.get("tool") or obj.get("tool_name") or obj.get("function")):
        items = [obj]
    elif isinstance(obj, list):
        items = obj
    else:
        return None
    calls = [c for c in (_call_from_item(i) for i in items) if c is not None]
    return calls or None


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None


class ToolCallParser:
    name = "base"

    def try_handle(self, text: str) -> Optional[List[ToolCall]]:
        raise NotImplementedError


class StrictJsonParser(ToolCallParser):
    name = "strict_json"

    def try_handle(self, text: str) -> Optional[List[ToolCall]]:
        return tool_calls_from_obj(_loads(text.strip()))


class FencedJsonParser(ToolCallParser):
    name = "fenced_json"

    def try_handle(self, text: str) -> Optional[List[ToolCall]]:
        for match in _FENCE_RE.finditer(text):
            language = match.group(1).lower()
            if language not in {"", "json", "jsonc", "json5"}:
                continue
            calls = tool_calls_from_obj(_loads(match.group(2).strip()))
            if calls:
                return calls
        return None


class RegexJsonParser(ToolCallParser):
    name = "regex_json"

    def try_handle(self, text: str) -> Optional[List[ToolCall]]:
        match = _OBJECT_SPAN_RE.search(text)
        if not match:
            return None
        return tool_calls_from_obj(_loads(match.group()))


class KeywordInferenceParser(ToolCallParser):
    name = "keyword"

    def try_handle(self, text: str) -> Optional[List[ToolCall]]:
        match = _KEYWORD_RE.search(text)
        if not match:
            return None
        args = _coerce_arguments(match.group("args") or "")
        return [ToolCall(server=match.group("server"), tool=match.group("tool"), arguments=args)]


DEFAULT_PARSERS: Sequence[ToolCallParser] = (
    StrictJsonParser(),
    FencedJsonParser(),
    RegexJsonParser(),
    KeywordInferenceParser(),
)


def parse_tool_calls(text: str, parsers: Sequence[ToolCallParser] = DEFAULT_PARSERS) -> Optional[List[ToolCall]]:
    raw = str(text or "")
    if not raw.strip():
        return None
    for parser in parsers:
        calls = parser.try_handle(raw)
        if calls:
            logger.debug("tool_calls.parsed parser=%s count=%s", parser.name, len(calls))
            return calls
    return None
