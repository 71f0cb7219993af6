"""Artifact classifier & normalizer.

Turns a raw block (or streamed artifact content) into a typed ``Artifact``.
Kinds are a tagged union: each ``KindSpec`` carries only a default title
and a normalize function over the payload. Normalization never raises for
malformed payloads; it falls back and reports to ExtractionDiagnostics.
"""

from __future__ import annotations

import base64
import binascii
import csv
import io
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from artiflow.config import EngineConfig
from artiflow.core.enums import (
    ArtifactKind,
    ArtifactStatus,
    ChartType,
    MapType,
    VisualizationType,
)
from artiflow.core.protocols import Artifact, artifact_id
from artiflow.kernel.diagnostics import ExtractionDiagnostics
from artiflow.kernel.scanner import RawBlock

logger = logging.getLogger(__name__)


# ── JSON salvage ──


_FENCE_LINE_RE = re.compile(r"^\s*(```|~~~)[^\n]*\n?|\n?\s*(```|~~~)\s*$")


def _balanced_span(text: str, start: int, opening: str, closing: str) -> Optional[str]:
    """Return the balanced ``opening...closing`` span starting at ``start``."""
    depth = 0
    in_string = False
    escaped = False
    for j in range(start, len(text)):
        ch = text[j]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opening:
            depth += 1
        elif ch == closing:
            depth -= 1
            if depth == 0:
                return text[start:j + 1]
    return None


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def extract_json(text: str) -> Any:
    """Best-effort JSON extraction.

    Strict parse first; otherwise strip surrounding markdown fences, take the
    first balanced ``{...}`` span and retry once. Returns None on failure.
    """
    if not text or not text.strip():
        return None
    stripped = text.strip()
    parsed = _loads(stripped)
    if parsed is not None:
        return parsed

    cleaned = _FENCE_LINE_RE.sub("", stripped).strip()
    start = cleaned.find("{")
    if start == -1:
        return None
    span = _balanced_span(cleaned, start, "{", "}")
    if span is None:
        return None
    return _loads(span)


def complete_partial_json(text: str) -> Any:
    """Parse a JSON document that is still being streamed.

    Closes an open string and all open containers, dropping a dangling
    key or trailing comma. When that fails, cuts back to earlier commas
    (a bounded number of times) and retries.
    """
    src = text.strip()
    start = min((i for i in (src.find("{"), src.find("[")) if i != -1), default=-1)
    if start == -1:
        return None
    src = src[start:]

    cut_points: List[int] = []
    stack: List[str] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(src):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if stack:
                stack.pop()
            if not stack:
                # Complete document; anything after it is noise
                return _loads(src[:i + 1])
        elif ch == ",":
            cut_points.append(i)

    def _close(fragment: str) -> Any:
        depth: List[str] = []
        quoted = False
        esc = False
        for ch in fragment:
            if quoted:
                if esc:
                    esc = False
                elif ch == "\\":
                    esc = True
                elif ch == '"':
                    quoted = False
                continue
            if ch == '"':
                quoted = True
            elif ch in "{[":
                depth.append("}" if ch == "{" else "]")
            elif ch in "}]" and depth:
                depth.pop()
        body = fragment + ('"' if quoted else "")
        body = body.rstrip()
        if body.endswith(","):
            body = body[:-1]
        if body.endswith(":"):
            return None
        return _loads(body + "".join(reversed(depth)))

    candidate = _close(src)
    if candidate is not None:
        return candidate
    for cut in reversed(cut_points[-8:]):
        candidate = _close(src[:cut])
        if candidate is not None:
            return candidate
    return None


# ── Inference helpers ──


_CHART_KEYWORDS = (
    (ChartType.PIE, ("pie", "distribution", "share")),
    (ChartType.LINE, ("line", "trend", "over time")),
    (ChartType.AREA, ("area",)),
)


def infer_chart_type(title: str | None) -> ChartType:
    """Guess a chart type from title keywords; bar when nothing matches."""
    lowered = (title or "").lower()
    for chart_type, keywords in _CHART_KEYWORDS:
        if any(k in lowered for k in keywords):
            return chart_type
    return ChartType.BAR


def _enum_value(enum_cls, value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    try:
        return enum_cls(value.strip().lower()).value
    except ValueError:
        return None


def resolve_chart_type(subtype: str | None, declared: Any, title: str | None) -> str:
    """Subtype tag wins, then a valid declared chartType, then title inference."""
    return (
        _enum_value(ChartType, subtype)
        or _enum_value(ChartType, declared)
        or infer_chart_type(title).value
    )


def _infer_axis_keys(rows: List[Any]) -> tuple[Optional[str], Optional[str]]:
    first = next((r for r in rows if isinstance(r, dict)), None)
    if not first:
        return None, None
    x_key = next((k for k, v in first.items() if isinstance(v, str)), None)
    y_key = next(
        (k for k, v in first.items()
         if isinstance(v, (int, float)) and not isinstance(v, bool) and k != x_key),
        None,
    )
    return x_key, y_key


def _first_heading(text: str) -> Optional[str]:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            heading = stripped.lstrip("#").strip()
            if heading:
                return heading
    return None


# ── Payload & kind registry ──


@dataclass(frozen=True)
class Payload:
    """Everything a kind's normalize function may look at."""
    kind: ArtifactKind
    body: str
    closed: bool
    subtype: Optional[str] = None
    language: Optional[str] = None
    # Directly structured content (e.g. a chart-delta carrying a data object)
    structured: Optional[Dict[str, Any]] = None
    title: Optional[str] = None


@dataclass
class Normalized:
    title: Optional[str] = None
    subtype: Optional[str] = None
    data: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    fallback: bool = False
    failure: Optional[str] = None


@dataclass
class NormalizeContext:
    settings: EngineConfig

    def parse(self, payload: Payload) -> Any:
        """Parse a JSON payload; partial documents are tolerated while open."""
        if payload.structured is not None:
            return payload.structured
        parsed = extract_json(payload.body)
        if parsed is None and not payload.closed:
            parsed = complete_partial_json(payload.body)
        return parsed


@dataclass(frozen=True)
class KindSpec:
    kind: ArtifactKind
    default_title: str
    normalize: Callable[[Payload, NormalizeContext], Normalized]
    json_payload: bool = False


def _as_object(parsed: Any) -> Dict[str, Any]:
    if isinstance(parsed, dict):
        return parsed
    if isinstance(parsed, list):
        return {"data": parsed}
    return {}


def _str_or_none(value: Any) -> Optional[str]:
    return value.strip() if isinstance(value, str) and value.strip() else None


def _normalize_chart(payload: Payload, ctx: NormalizeContext) -> Normalized:
    parsed = ctx.parse(payload)
    obj = _as_object(parsed)
    title = _str_or_none(obj.get("title")) or payload.title
    result = Normalized(
        title=title,
        subtype=resolve_chart_type(payload.subtype, obj.get("chartType"), title),
    )

    data = obj.get("data")
    if isinstance(data, list) and data:
        x_guess, y_guess = _infer_axis_keys(data)
        result.data = data
        result.metadata = {
            "x_key": _str_or_none(obj.get("xKey")) or x_guess or "x",
            "y_key": _str_or_none(obj.get("yKey")) or y_guess or "y",
        }
        return result

    if not payload.closed:
        # Still arriving: nothing renderable yet, no placeholder either
        return result

    fb = ctx.settings.fallback_chart
    result.data = [dict(row) for row in fb.data]
    result.metadata = {"x_key": fb.x_key, "y_key": fb.y_key}
    result.fallback = True
    result.failure = "unparsable chart payload" if parsed is None else "chart data missing or empty"
    return result


def _passthrough(placeholder: Callable[[], Any], subtype_enum=None, subtype_field: str | None = None,
                 default_subtype: str | None = None, children_key: str | None = None):
    def normalize(payload: Payload, ctx: NormalizeContext) -> Normalized:
        parsed = ctx.parse(payload)
        obj = _as_object(parsed)
        result = Normalized(title=_str_or_none(obj.get("title")) or payload.title)
        if subtype_enum is not None:
            result.subtype = (
                _enum_value(subtype_enum, payload.subtype)
                or _enum_value(subtype_enum, obj.get(subtype_field))
                or default_subtype
            )
        if parsed is None:
            if payload.closed:
                result.data = placeholder()
                result.fallback = True
                result.failure = "unparsable payload"
            return result

        if "data" in obj:
            result.data = obj["data"]
        elif children_key and children_key in obj:
            result.data = obj[children_key]
        else:
            result.data = obj
        for extra in ("labels", "type", "center", "zoom"):
            if extra in obj and extra != subtype_field:
                result.metadata[extra] = obj[extra]
        return result
    return normalize


def _normalize_code(payload: Payload, ctx: NormalizeContext) -> Normalized:
    language = payload.language or "text"
    return Normalized(
        title=payload.title or f"{language.upper()} Code",
        metadata={"line_count": len(payload.body.strip().split("\n")) if payload.body.strip() else 0},
    )


def _normalize_diagram(payload: Payload, ctx: NormalizeContext) -> Normalized:
    tokens = payload.body.split()
    # First token names the diagram type (graph, sequenceDiagram, ...)
    return Normalized(title=payload.title, subtype=tokens[0] if tokens else None)


def _normalize_document(payload: Payload, ctx: NormalizeContext) -> Normalized:
    text = payload.body
    return Normalized(
        title=payload.title or _first_heading(text),
        metadata={
            "word_count": len(text.split()),
            "line_count": len(text.splitlines()),
        },
    )


def _normalize_sheet(payload: Payload, ctx: NormalizeContext) -> Normalized:
    text = payload.body.strip()
    if not text:
        return Normalized(title=payload.title)
    try:
        rows = [r for r in csv.reader(io.StringIO(text)) if any(c.strip() for c in r)]
    except csv.Error as e:
        logger.debug("CSV metadata not derivable: %s", e)
        return Normalized(title=payload.title, metadata={"size": len(text)})
    headers = [h.strip() for h in rows[0]] if rows else []
    return Normalized(
        title=payload.title,
        metadata={
            "rows": max(len(rows) - 1, 0),
            "columns": len(headers),
            "headers": headers,
            "size": len(text),
        },
    )


_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<b64>;base64)?,(?P<data>.*)$", re.DOTALL)


def _normalize_image(payload: Payload, ctx: NormalizeContext) -> Normalized:
    text = payload.body.strip()
    metadata: Dict[str, Any] = {}
    m = _DATA_URL_RE.match(text)
    if m:
        if m.group("mime"):
            metadata["mime"] = m.group("mime")
        encoded = m.group("data")
        if m.group("b64"):
            try:
                metadata["size"] = len(base64.b64decode(encoded, validate=True))
            except (binascii.Error, ValueError):
                pass
        else:
            metadata["size"] = len(encoded)
    elif text.startswith(("http://", "https://")):
        metadata["url"] = text
    elif text:
        try:
            metadata["size"] = len(base64.b64decode(text, validate=True))
        except (binascii.Error, ValueError):
            pass
    return Normalized(title=payload.title, metadata=metadata)


KIND_REGISTRY: Dict[ArtifactKind, KindSpec] = {
    ArtifactKind.CHART: KindSpec(ArtifactKind.CHART, "Chart", _normalize_chart, json_payload=True),
    ArtifactKind.TABLE: KindSpec(
        ArtifactKind.TABLE, "Data Table", _passthrough(list), json_payload=True,
    ),
    ArtifactKind.VISUALIZATION: KindSpec(
        ArtifactKind.VISUALIZATION, "Visualization",
        _passthrough(dict, VisualizationType, "type", VisualizationType.CUSTOM.value),
        json_payload=True,
    ),
    ArtifactKind.HEATMAP: KindSpec(
        ArtifactKind.HEATMAP, "Heatmap", _passthrough(list), json_payload=True,
    ),
    ArtifactKind.TREEMAP: KindSpec(
        ArtifactKind.TREEMAP, "Treemap", _passthrough(list, children_key="children"),
        json_payload=True,
    ),
    ArtifactKind.GEOSPATIAL: KindSpec(
        ArtifactKind.GEOSPATIAL, "Geospatial Map",
        _passthrough(list, MapType, "mapType", MapType.BASIC.value),
        json_payload=True,
    ),
    ArtifactKind.CODE: KindSpec(ArtifactKind.CODE, "Code", _normalize_code),
    ArtifactKind.DIAGRAM: KindSpec(ArtifactKind.DIAGRAM, "Diagram", _normalize_diagram),
    ArtifactKind.DOCUMENT: KindSpec(ArtifactKind.DOCUMENT, "Document", _normalize_document),
    ArtifactKind.TEXT: KindSpec(ArtifactKind.TEXT, "Text", _normalize_document),
    ArtifactKind.SHEET: KindSpec(ArtifactKind.SHEET, "Spreadsheet", _normalize_sheet),
    ArtifactKind.IMAGE: KindSpec(ArtifactKind.IMAGE, "Image", _normalize_image),
}


# ── Public entry points ──


def build_artifact(
    payload: Payload,
    ordinal: int,
    settings: EngineConfig | None = None,
    diagnostics: ExtractionDiagnostics | None = None,
) -> Artifact:
    """Normalize ``payload`` into a fresh Artifact at ``ordinal``.

    Status is ``completed`` for a closed payload and ``streaming`` otherwise.
    """
    spec = KIND_REGISTRY[payload.kind]
    ctx = NormalizeContext(settings=settings or EngineConfig())
    normalized = spec.normalize(payload, ctx)

    if normalized.failure:
        logger.warning(
            "Recovered %s payload at %d with fallback: %s",
            payload.kind.value, ordinal, normalized.failure,
        )
        if diagnostics is not None:
            diagnostics.record(
                "parse_fallback",
                kind=payload.kind.value,
                ordinal=ordinal,
                reason=normalized.failure,
                excerpt=payload.body,
            )

    data = normalized.data
    if data is not None and not isinstance(data, (list, dict)):
        data = [data]

    if payload.structured is not None:
        raw_content = json.dumps(payload.structured, ensure_ascii=False)
    else:
        raw_content = payload.body

    return Artifact(
        id=artifact_id(payload.kind, ordinal),
        kind=payload.kind,
        subtype=normalized.subtype,
        title=normalized.title or spec.default_title,
        raw_content=raw_content,
        data=data,
        status=ArtifactStatus.COMPLETED if payload.closed else ArtifactStatus.STREAMING,
        ordinal=ordinal,
        language=payload.language if payload.kind in (ArtifactKind.CODE, ArtifactKind.DIAGRAM) else None,
        metadata=normalized.metadata,
        fallback=normalized.fallback,
    )


def classify(
    block: RawBlock,
    settings: EngineConfig | None = None,
    diagnostics: ExtractionDiagnostics | None = None,
) -> Optional[Artifact]:
    """Classify a scanned block. Returns None only for unknown kind tags."""
    if block.kind is None:
        return None
    payload = Payload(
        kind=block.kind,
        body=block.body,
        closed=block.closed,
        subtype=block.subtype,
        language=(block.language or "text") if block.kind == ArtifactKind.CODE else block.language,
    )
    return build_artifact(payload, block.ordinal, settings, diagnostics)
