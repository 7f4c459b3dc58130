"""Robust JSON extraction from model output.

Models wrap JSON in markdown fences, add prose before and after it,
leave trailing commas, use single quotes or get cut off mid-object.
``parse_json_response`` strips the wrapping, decodes the first JSON
value and, if that fails, applies a short list of textual repairs
before giving up with a ``ParseFailure``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from ..errors import ParseFailure

log = logging.getLogger(__name__)

PREVIEW_CHARS = 200

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*\n?(.*?)(?:```|$)", re.DOTALL)


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "..."


def strip_fences(text: str) -> str:
    """Return the body of the first ```json fence, or *text* unchanged."""
    text = text.strip()
    if "```" not in text:
        return text
    match = _FENCE_RE.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return text.replace("```json", "").replace("```", "").strip()


def _slice_from_first_bracket(text: str) -> str:
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    return text[min(starts):] if starts else text


def _decode_first(text: str) -> Any:
    """Decode the first JSON value in *text*, ignoring trailing prose."""
    return json.JSONDecoder().raw_decode(text)[0]


# ---------------------------------------------------------------------------
# Repairs
# ---------------------------------------------------------------------------

def _fix_trailing_commas(text: str) -> str:
    return re.sub(r",\s*([}\]])", r"\1", text)


def _fix_single_quotes(text: str) -> str:
    """Convert single-quoted strings to double-quoted ones."""
    out: list[str] = []
    in_double = in_single = escaped = False
    for ch in text:
        if escaped:
            out.append(ch)
            escaped = False
            continue
        if ch == "\\":
            out.append(ch)
            escaped = True
            continue
        if in_double:
            if ch == '"':
                in_double = False
            out.append(ch)
        elif in_single:
            if ch == "'":
                in_single = False
                out.append('"')
            elif ch == '"':
                out.append('\\"')
            else:
                out.append(ch)
        elif ch == '"':
            in_double = True
            out.append(ch)
        elif ch == "'":
            in_single = True
            out.append('"')
        else:
            out.append(ch)
    return "".join(out)


def _fix_missing_commas(text: str) -> str:
    text = re.sub(r'("|\d|true|false|null|[}\]])(\s*\n\s*)(")', r"\1,\2\3", text)
    return re.sub(r"([}\]])(\s*)([{\[])", r"\1,\2\3", text)


def _fix_split_numbers(text: str) -> str:
    return re.sub(r"(\d)\.\s+(\d)", r"\1.\2", text)


def _fix_control_chars(text: str) -> str:
    """Escape raw newlines and tabs that appear inside strings."""
    out: list[str] = []
    in_string = escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch == "\n":
                out.append("\\n")
                continue
            elif ch == "\r":
                out.append("\\r")
                continue
            elif ch == "\t":
                out.append("\\t")
                continue
            elif ord(ch) < 0x20:
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


def _close_truncated(text: str) -> str:
    """Balance brackets of output that was cut off mid-value."""
    stack: list[str] = []
    in_string = escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    if not stack and not in_string:
        return text
    fixed = text + ('"' if in_string else "")
    fixed = re.sub(r'[,:\s]+$', "", fixed)
    # dangling key without a value
    fixed = re.sub(r',\s*"[^"]*"$', "", fixed)
    return fixed + "".join(reversed(stack))


_REPAIRS: list[tuple[str, Callable[[str], str]]] = [
    ("trailing_commas", _fix_trailing_commas),
    ("single_quotes", _fix_single_quotes),
    ("missing_commas", _fix_missing_commas),
    ("split_numbers", _fix_split_numbers),
    ("control_chars", _fix_control_chars),
    ("truncation", _close_truncated),
]


def repair_json(text: str) -> Optional[Any]:
    """Apply repairs cumulatively; return the first value that decodes."""
    candidate = text
    for name, fix in _REPAIRS:
        candidate = fix(candidate)
        try:
            value = _decode_first(candidate)
        except json.JSONDecodeError:
            continue
        log.debug("Recovered model JSON after %s repair", name)
        return value
    return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_json_response(raw: str, model: type[T] | None = None) -> Any:
    """Decode model output into JSON, optionally validating into *model*.

    Raises
    ------
    ParseFailure
        With a preview of the raw text when nothing decodes or the
        decoded value does not fit *model*.
    """
    if not raw or not raw.strip():
        raise ParseFailure("empty model response", preview="")

    body = _slice_from_first_bracket(strip_fences(raw))
    try:
        value = _decode_first(body)
    except json.JSONDecodeError as exc:
        value = repair_json(body)
        if value is None:
            last = max(body.rfind("}"), body.rfind("]"))
            if last > 0:
                value = repair_json(body[: last + 1])
        if value is None:
            raise ParseFailure(
                f"could not parse JSON from model response: {exc.msg}",
                preview=preview(raw),
            ) from exc

    if model is None:
        return value
    if not isinstance(value, dict):
        raise ParseFailure(
            f"expected a JSON object for {model.__name__}, got {type(value).__name__}",
            preview=preview(raw),
        )
    try:
        return model.model_validate(value)
    except ValidationError as exc:
        raise ParseFailure(
            f"response does not match {model.__name__}: {exc.error_count()} error(s)",
            preview=preview(raw),
        ) from exc
