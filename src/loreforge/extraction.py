"""Recover structured records from unreliable model output."""

from __future__ import annotations

import json
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .schemas import FieldSpec, FieldType, RecordSchema


class FailureKind(str, Enum):
    NO_JSON_FOUND = "NoJsonFound"
    MALFORMED_JSON = "MalformedJson"


class Strategy(str, Enum):
    DIRECT = "direct"
    JSON_FENCE = "json_fence"
    ANY_FENCE = "any_fence"
    BRACE_SPAN = "brace_span"
    TRUNCATION_REPAIR = "truncation_repair"


@dataclass(frozen=True)
class ExtractionSuccess:
    record: Dict[str, Any]
    strategy: Strategy
    filled_fields: Tuple[str, ...] = ()

    ok = True


@dataclass(frozen=True)
class ExtractionFailure:
    kind: FailureKind
    detail: str = ""
    attempts: Tuple[str, ...] = field(default_factory=tuple)

    ok = False

    def __str__(self) -> str:
        return self.kind.value


ExtractionResult = Union[ExtractionSuccess, ExtractionFailure]


_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z0-9_+.-]*)[ \t]*\n?(.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*$")
_MAX_REPAIR_CANDIDATES = 64


class ResponseExtractor:
    """Run the extraction ladder and normalise the result against a schema.

    Steps are tried in order and the first one yielding a JSON object wins:
    direct parse, ``json`` fenced block, any fenced block, first-brace to
    last-brace span and, for truncated output only, a repair pass that cuts
    back to the last complete closing brace.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("loreforge")

    # ------------------------------------------------------------------
    def extract(
        self,
        text: str | None,
        *,
        schema: RecordSchema | None = None,
        truncated: bool = False,
    ) -> ExtractionResult:
        try:
            return self._extract(text or "", schema=schema, truncated=truncated)
        except Exception as exc:
            self.logger.exception("Extractor raised unexpectedly: %s", exc)
            return ExtractionFailure(FailureKind.MALFORMED_JSON, detail=str(exc))

    def _extract(
        self,
        text: str,
        *,
        schema: RecordSchema | None,
        truncated: bool,
    ) -> ExtractionResult:
        attempts: List[str] = []
        found_candidate = False
        last_error = ""

        for strategy, candidate in self._candidates(text, truncated=truncated):
            if candidate is None:
                continue
            found_candidate = True
            attempts.append(strategy.value)
            parsed, error = _loads_object(candidate)
            if parsed is None:
                last_error = error
                continue
            self.logger.debug("Extracted record via %s", strategy.value)
            if schema is None:
                return ExtractionSuccess(parsed, strategy)
            record, filled = validate_record(parsed, schema)
            if filled:
                self.logger.debug("Filled missing or empty fields with defaults: %s", ", ".join(filled))
            return ExtractionSuccess(record, strategy, tuple(filled))

        if not found_candidate:
            return ExtractionFailure(FailureKind.NO_JSON_FOUND, detail="No JSON found in content")
        return ExtractionFailure(
            FailureKind.MALFORMED_JSON,
            detail=last_error or "Unable to parse JSON",
            attempts=tuple(attempts),
        )

    # ------------------------------------------------------------------
    def _candidates(self, text: str, *, truncated: bool) -> Iterator[Tuple[Strategy, Optional[str]]]:
        stripped = text.strip()
        # The whole text only counts as a JSON candidate when it looks like one.
        yield Strategy.DIRECT, stripped if stripped[:1] in ("{", "[") else None

        fences = [(label.lower(), body.strip()) for label, body in _FENCE_RE.findall(text)]
        yield Strategy.JSON_FENCE, next((body for label, body in fences if label == "json"), None)
        yield Strategy.ANY_FENCE, fences[0][1] if fences else None

        span = brace_span(text)
        yield Strategy.BRACE_SPAN, span

        if truncated:
            for candidate in truncation_candidates(text):
                yield Strategy.TRUNCATION_REPAIR, candidate


# ----------------------------------------------------------------------
# Parsing helpers
# ----------------------------------------------------------------------


def _loads_object(candidate: str) -> Tuple[Optional[Dict[str, Any]], str]:
    if not candidate:
        return None, "empty candidate"
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as exc:
        return None, str(exc)
    if isinstance(parsed, Mapping):
        return dict(parsed), ""
    return None, f"expected a JSON object, got {type(parsed).__name__}"


def brace_span(text: str) -> Optional[str]:
    """Return the substring from the first ``{`` to the last ``}``."""

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def truncation_candidates(text: str) -> Iterator[str]:
    """Yield repaired prefixes of a truncated object, longest first.

    The fragment starting at the first ``{`` has one dangling trailing comma
    stripped, is cut back to a closing brace that sits outside any string and
    the brackets still open at that point are closed.
    """

    start = text.find("{")
    if start == -1:
        return
    fragment = _TRAILING_COMMA_RE.sub("", text[start:].rstrip())
    closings = list(_scan_closers(fragment))
    for count, (pos, stack) in enumerate(reversed(closings)):
        if count >= _MAX_REPAIR_CANDIDATES:
            return
        prefix = fragment[: pos + 1]
        closers = "".join("}" if opener == "{" else "]" for opener in reversed(stack))
        yield prefix + closers


def _scan_closers(fragment: str) -> Iterator[Tuple[int, List[str]]]:
    stack: List[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(fragment):
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
        elif char in "{[":
            stack.append(char)
        elif char in "}]":
            if not stack:
                return
            stack.pop()
            if char == "}":
                yield index, list(stack)
            if not stack:
                return


# ----------------------------------------------------------------------
# Schema validation
# ----------------------------------------------------------------------


def validate_record(payload: Mapping[str, Any], schema: RecordSchema) -> Tuple["OrderedDict[str, Any]", List[str]]:
    """Coerce ``payload`` into ``schema``, filling defaults where needed.

    Returns the normalised record (schema fields first, extra keys after in
    sorted order) and the names of fields that were defaulted.
    """

    normalized: "OrderedDict[str, Any]" = OrderedDict()
    filled: List[str] = []
    for spec in schema.fields:
        if spec.name not in payload:
            normalized[spec.name] = spec.default_value()
            filled.append(spec.name)
            continue
        value, replaced = coerce_value(payload[spec.name], spec)
        normalized[spec.name] = value
        if replaced:
            filled.append(spec.name)
    for key in sorted(k for k in payload if k not in normalized):
        normalized[key] = payload[key]
    return normalized, filled


def coerce_value(value: Any, spec: FieldSpec) -> Tuple[Any, bool]:
    if value is None:
        return spec.default_value(), True
    kind = spec.kind
    if kind is FieldType.SEQUENCE:
        if isinstance(value, list):
            return value, False
        if isinstance(value, (tuple, set)):
            return list(value), False
        return [value], False
    if kind is FieldType.STRING:
        if isinstance(value, str):
            return value, False
        if isinstance(value, list):
            return ", ".join(str(item) for item in value), False
        return str(value), False
    if kind is FieldType.MAPPING:
        if isinstance(value, Mapping):
            return dict(value), False
        return spec.default_value(), True
    if kind is FieldType.INTEGER:
        if isinstance(value, bool):
            return int(value), False
        if isinstance(value, int):
            return value, False
        try:
            return int(float(str(value).strip())), False
        except (ValueError, OverflowError):
            return spec.default_value(), True
    if kind is FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value, False
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"true", "yes", "1"}:
                return True, False
            if lowered in {"false", "no", "0", ""}:
                return False, False
            return spec.default_value(), True
        return bool(value), False
    return value, False


__all__ = [
    "FailureKind",
    "Strategy",
    "ExtractionSuccess",
    "ExtractionFailure",
    "ExtractionResult",
    "ResponseExtractor",
    "brace_span",
    "truncation_candidates",
    "validate_record",
    "coerce_value",
]
