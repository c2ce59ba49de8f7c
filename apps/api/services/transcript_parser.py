"""Defensive parsing of model transcription output into ``TranscriptionResult``."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterator, List, Optional

from services.ingest_errors import TranscriptionParseDegradation
from services.ingest_types import ContentMetadata, ScriptComponents, TranscriptionResult

logger = logging.getLogger(__name__)

FENCED_BLOCK_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)\n?\s*```", re.S)
TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
RAW_SAMPLE_CHARS = 600

CALL_TO_ACTION_KEYS = ("callToAction", "call_to_action", "cta", "wta", "CTA", "WTA")


def _first_balanced_object(text: str) -> Optional[str]:
    """Return the first top-level ``{...}`` span, honoring JSON string escapes."""
    start = text.find("{")
    while start != -1:
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
                    return text[start:index + 1]
        # Unbalanced from this brace; try the next opening brace.
        start = text.find("{", start + 1)
    return None


def _candidates(text: str) -> Iterator[str]:
    for match in FENCED_BLOCK_RE.finditer(text):
        block = match.group(1).strip()
        if block:
            yield block
    span = _first_balanced_object(text)
    if span:
        yield span
    yield text.strip()


def _loads_lenient(candidate: str) -> Optional[Dict[str, Any]]:
    for attempt in (candidate, TRAILING_COMMA_RE.sub(r"\1", candidate)):
        try:
            parsed = json.loads(attempt)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value).strip()


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] not in (None, ""):
            return data[key]
    return None


def _hashtags(value: Any) -> List[str]:
    if isinstance(value, str):
        value = re.split(r"[\s,]+", value)
    if not isinstance(value, (list, tuple)):
        return []
    tags = []
    for item in value:
        tag = str(item or "").strip().lstrip("#")
        if tag:
            tags.append(tag)
    return tags


def components_from_dict(data: Dict[str, Any]) -> ScriptComponents:
    source = data.get("components")
    if not isinstance(source, dict):
        source = data
    return ScriptComponents(
        hook=_text(_pick(source, "hook", "Hook")),
        bridge=_text(_pick(source, "bridge", "Bridge")),
        nugget=_text(_pick(source, "nugget", "Nugget", "golden_nugget", "goldenNugget")),
        call_to_action=_text(_pick(source, *CALL_TO_ACTION_KEYS)),
    )


def content_metadata_from_dict(data: Dict[str, Any]) -> ContentMetadata:
    source = _pick(data, "contentMetadata", "content_metadata")
    if not isinstance(source, dict):
        return ContentMetadata()
    return ContentMetadata(
        author=_text(source.get("author")) or None,
        description=_text(source.get("description")) or None,
        hashtags=tuple(_hashtags(source.get("hashtags"))),
    )


def _log_raw_sample(raw: str, reason: str) -> None:
    sample = raw[:RAW_SAMPLE_CHARS]
    if len(raw) > RAW_SAMPLE_CHARS:
        sample += f"...(+{len(raw) - RAW_SAMPLE_CHARS} chars)"
    logger.warning("[%s] %s. Raw model output sample: %r", TranscriptionParseDegradation.code, reason, sample)


def parse_transcription_response(raw: Optional[str]) -> TranscriptionResult:
    """
    Extract the structured payload from free-form model output.

    Tries, in order: fenced code blocks, the first balanced JSON object, and
    the whole text, each with a trailing-comma repair pass. When nothing
    parses the raw text becomes the transcript and ``degraded`` is set.
    """
    text = str(raw or "")
    if not text.strip():
        return TranscriptionResult(degraded=True, raw_response=text)

    data: Optional[Dict[str, Any]] = None
    for candidate in _candidates(text):
        data = _loads_lenient(candidate)
        if data is not None:
            break

    if data is None:
        _log_raw_sample(text, "Could not parse structured transcription output")
        return TranscriptionResult(transcript=text, degraded=True, raw_response=text)

    transcript = _text(_pick(data, "transcript", "transcription", "text"))
    if not transcript:
        _log_raw_sample(text, "Structured output carried no transcript")

    return TranscriptionResult(
        transcript=transcript,
        components=components_from_dict(data),
        content_metadata=content_metadata_from_dict(data),
        visual_context=_text(_pick(data, "visualContext", "visual_context")),
        degraded=False,
        raw_response=text,
    )
