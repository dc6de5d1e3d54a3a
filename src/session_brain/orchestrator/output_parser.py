"""Parse the agent's NDJSON event stream into a validated node payload."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

REQUIRED_SECTIONS: tuple[str, ...] = (
    "classification",
    "content",
    "lessons",
    "observations",
    "semantic",
    "daemonMeta",
)
REQUIRED_STRING_FIELDS: tuple[tuple[str, str], ...] = (
    ("classification", "type"),
    ("classification", "project"),
    ("content", "summary"),
    ("content", "outcome"),
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n(.*?)\n```", re.DOTALL)


@dataclass(slots=True)
class ParsedAgentOutput:
    """Outcome of parsing agent stdout."""

    success: bool
    node_data: dict[str, Any] | None = None
    error: str | None = None


def parse_agent_output(stdout: str) -> ParsedAgentOutput:
    """Find the final assistant message and extract the node object from it."""

    events = list(_iter_events(stdout))
    end_event = next(
        (
            event
            for event in events
            if event.get("type") == "agent_end" and isinstance(event.get("messages"), list)
        ),
        None,
    )
    if end_event is None:
        return ParsedAgentOutput(success=False, error="No agent_end event found in output")

    assistant_messages = [
        message
        for message in end_event["messages"]
        if isinstance(message, dict) and message.get("role") == "assistant"
    ]
    if not assistant_messages:
        return ParsedAgentOutput(success=False, error="No assistant message in agent_end event")

    text = assistant_text(assistant_messages[-1])
    candidate = extract_json_object(text)
    if candidate is None:
        return ParsedAgentOutput(
            success=False,
            error="Could not extract valid JSON from assistant response",
        )

    problem = validate_node_output(candidate)
    if problem is not None:
        return ParsedAgentOutput(success=False, error=f"Invalid node output: {problem}")
    return ParsedAgentOutput(success=True, node_data=candidate)


def assistant_text(message: dict[str, Any]) -> str:
    """Join the text blocks of one message."""

    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    return "\n".join(
        block["text"]
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
    )


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Fenced ```json block first, then the first balanced ``{...}`` span."""

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload
        logger.debug("Fenced block is not a JSON object, scanning for a balanced span")

    span = _first_balanced_object(text)
    if span is None:
        return None
    return _try_load_dict(span)


def validate_node_output(payload: object) -> str | None:
    """Return a description of the first structural problem, or None."""

    if not isinstance(payload, dict):
        return "payload is not an object"
    for section in REQUIRED_SECTIONS:
        if not isinstance(payload.get(section), dict):
            return f"missing required section '{section}'"
    for section, field_name in REQUIRED_STRING_FIELDS:
        if not isinstance(payload[section].get(field_name), str):
            return f"missing required field '{section}.{field_name}'"
    return None


def _iter_events(stdout: str):
    for line in stdout.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON output line: %s", stripped[:120])
            continue
        if isinstance(event, dict):
            yield event


def _first_balanced_object(text: str) -> str | None:
    start = text.find("{")
    while start != -1:
        end = _matching_brace(text, start)
        if end is None:
            return None
        span = text[start : end + 1]
        if _try_load_dict(span) is not None:
            return span
        start = text.find("{", start + 1)
    return None


def _matching_brace(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
