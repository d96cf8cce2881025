"""
Best-effort recovery of JSON from model output.

Models wrap answers in prose and markdown fences and make small syntax slips.
extract_json applies a bounded chain of passes, each building on the previous
one, and reports the first stage whose output parses. Anything past "direct"
is logged so recurring repairs show up as prompt drift.
"""

import json
import re
from typing import Any, Tuple

from .errors import UpstreamMalformedError
from ..util.logging import logger

STAGES = ("direct", "strip_fences", "extract_span", "fix_quotes_and_commas", "quote_bare_values")

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_SPAN_RE = re.compile(r"\{.*\}|\[.*\]", re.DOTALL)
_SMART_QUOTES_RE = re.compile(r"[“”„«»]")
_SINGLE_QUOTED_RE = re.compile(r"'([^']*)'")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_DOUBLE_COMMA_RE = re.compile(r",\s*,+")
_UNQUOTED_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z0-9_\- ]+?)\s*:")
_BARE_VALUE_RE = re.compile(r":\s*([^\"',}\]\[{\s][^\",}\]]*?)\s*(,|}|])")
_LITERAL_RE = re.compile(r"^(true|false|null|-?\d+(\.\d+)?([eE][+-]?\d+)?)$")


def _parse(text: str) -> Any:
    return json.loads(text, strict=False)


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def _extract_span(text: str) -> str:
    match = _SPAN_RE.search(text)
    if not match:
        return text
    return match.group(0).replace("\r", "").replace("\n", " ").replace("\t", " ").strip()


def _quote_key(match) -> str:
    key = match.group(2).strip().replace('"', '\\"')
    return f'{match.group(1)}"{key}":'


def _fix_quotes_and_commas(text: str) -> str:
    text = _SMART_QUOTES_RE.sub('"', text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    text = _DOUBLE_COMMA_RE.sub(",", text)
    text = _UNQUOTED_KEY_RE.sub(_quote_key, text)
    if '"' not in text:
        # Entirely single-quoted output; apostrophes inside double-quoted text are left alone
        text = _SINGLE_QUOTED_RE.sub(r'"\1"', text)
    return text


def _quote_value(match) -> str:
    value = match.group(1).strip()
    if _LITERAL_RE.match(value):
        return f":{value}{match.group(2)}"
    escaped = value.replace('"', '\\"')
    return f':"{escaped}"{match.group(2)}'


def _quote_bare_values(text: str) -> str:
    return _BARE_VALUE_RE.sub(_quote_value, text)


_PASSES = (
    ("strip_fences", _strip_fences),
    ("extract_span", _extract_span),
    ("fix_quotes_and_commas", _fix_quotes_and_commas),
    ("quote_bare_values", _quote_bare_values),
)


def extract_json(text: str, context: str = None) -> Tuple[Any, str]:
    """
    Parse model output into a JSON value.

    Returns (value, stage) where stage names the repair pass that made it
    parse. Raises UpstreamMalformedError once every pass has been tried.
    """
    if not text or not text.strip():
        raise UpstreamMalformedError("Empty model output", raw_output=text or "")

    candidate = text.strip()
    try:
        return _parse(candidate), "direct"
    except json.JSONDecodeError:
        pass

    error = None
    for stage, repair in _PASSES:
        candidate = repair(candidate)
        try:
            value = _parse(candidate)
        except json.JSONDecodeError as e:
            error = e
            continue
        logger.log_json_repair(stage, context)
        return value, stage

    logger.log_json_repair("exhausted", context)
    raise UpstreamMalformedError(f"No valid JSON found in model output: {error}", raw_output=text)
