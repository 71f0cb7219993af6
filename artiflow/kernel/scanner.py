"""Block scanner — finds fenced blocks in a buffer snapshot.

``scan`` is a pure function of its input: no compiled pattern carries a
cursor between calls, so two sessions can scan concurrently and the same
buffer always yields the same blocks.

Grammar (one fence per line, up to three spaces of indent):

    ```lang            generic block, reported as CODE
    ```mermaid         diagram block, reported as DIAGRAM
    ```json:kind[:sub] typed block carrying a JSON payload

A closing fence uses the opening fence's character, is at least as long,
and carries no info string. Everything between the fences is body, so a
region is never counted twice.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterator, List, Optional

from artiflow.config import EngineConfig
from artiflow.core.enums import TYPED_FENCE_KINDS, ArtifactKind

logger = logging.getLogger(__name__)

_OPEN_FENCE_RE = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})(?P<info>[^\n]*)$")
_TYPED_TAG_RE = re.compile(r"^json:(?P<kind>[A-Za-z_]+)(?::(?P<subtype>[A-Za-z0-9_-]+))?$")
_DIAGRAM_LANGUAGES = frozenset({"mermaid"})


@dataclass(frozen=True)
class RawBlock:
    """One fenced region, as found in a buffer snapshot."""
    ordinal: int                 # offset of the opening fence
    end: Optional[int]           # offset just past the closing fence; None while open
    fence: str
    info: str
    language: Optional[str]
    kind: Optional[ArtifactKind]  # None for typed tags naming an unknown kind
    subtype: Optional[str]
    body: str
    closed: bool
    typed: bool

    @property
    def tag_kind(self) -> str:
        """Raw kind token, including unknown typed kinds."""
        if self.typed:
            m = _TYPED_TAG_RE.match(self.info)
            return m.group("kind").lower() if m else ""
        return self.kind.value if self.kind else ""


def _iter_lines(buffer: str) -> Iterator[tuple[int, str, bool]]:
    """Yield (offset, line_without_newline, terminated) for each line."""
    pos = 0
    length = len(buffer)
    while pos < length:
        nl = buffer.find("\n", pos)
        if nl == -1:
            yield pos, buffer[pos:], False
            return
        yield pos, buffer[pos:nl], True
        pos = nl + 1


def _is_closing_fence(line: str, fence: str) -> bool:
    stripped = line.strip()
    if len(line) - len(line.lstrip(" ")) > 3 or not stripped:
        return False
    return (
        len(stripped) >= len(fence)
        and set(stripped) == {fence[0]}
    )


def _may_become_fence(line: str, fence: str) -> bool:
    """Whether an unterminated line could still grow into a closing fence."""
    if len(line) - len(line.lstrip(" ")) > 3:
        return False
    return set(line.strip()) <= {fence[0]}


def _classify_info(info: str) -> tuple[Optional[ArtifactKind], Optional[str], Optional[str], bool]:
    """Return (kind, subtype, language, typed) for a fence info string."""
    m = _TYPED_TAG_RE.match(info)
    if m:
        try:
            kind = ArtifactKind(m.group("kind").lower())
        except ValueError:
            kind = None
        if kind is not None and kind not in TYPED_FENCE_KINDS:
            kind = None
        subtype = m.group("subtype")
        return kind, subtype.lower() if subtype else None, "json", True

    language = info.split()[0] if info.split() else None
    if language and language.lower() in _DIAGRAM_LANGUAGES:
        return ArtifactKind.DIAGRAM, None, language.lower(), False
    return ArtifactKind.CODE, None, language, False


def scan_blocks(buffer: str, *, partial: bool = False) -> List[RawBlock]:
    """Return every fenced block in ``buffer``, unfiltered.

    With ``partial=True`` the buffer is still growing: a final line without
    its newline can neither open nor close a fence yet, since more
    characters may still change its meaning. With ``partial=False`` the
    buffer is complete and an unterminated last line counts as a fence.
    """
    blocks: List[RawBlock] = []
    open_start: Optional[int] = None
    body_start = 0
    fence = ""
    info = ""

    for offset, line, terminated in _iter_lines(buffer):
        settled = terminated or not partial

        if open_start is None:
            if not settled:
                continue
            m = _OPEN_FENCE_RE.match(line)
            if not m:
                continue
            fence_chars = m.group("fence")
            candidate_info = m.group("info").strip()
            if fence_chars[0] == "`" and "`" in candidate_info:
                continue
            open_start = offset
            fence = fence_chars
            info = candidate_info
            body_start = offset + len(line) + (1 if terminated else 0)
            continue

        if settled and _is_closing_fence(line, fence):
            body = buffer[body_start:offset]
            if body.endswith("\n"):
                body = body[:-1]
            kind, subtype, language, typed = _classify_info(info)
            blocks.append(RawBlock(
                ordinal=open_start,
                end=offset + len(line) + (1 if terminated else 0),
                fence=fence,
                info=info,
                language=language,
                kind=kind,
                subtype=subtype,
                body=body,
                closed=True,
                typed=typed,
            ))
            open_start = None

    if open_start is not None:
        body = buffer[body_start:]
        if partial and not body.endswith("\n"):
            tail_start = body.rfind("\n") + 1
            if _may_become_fence(body[tail_start:], fence):
                body = body[:tail_start]
        kind, subtype, language, typed = _classify_info(info)
        blocks.append(RawBlock(
            ordinal=open_start,
            end=None,
            fence=fence,
            info=info,
            language=language,
            kind=kind,
            subtype=subtype,
            body=body,
            closed=False,
            typed=typed,
        ))

    return blocks


def is_substantial(body: str, min_lines: int = 5, min_chars: int = 200) -> bool:
    """Whether a generic code body is worth surfacing as an artifact."""
    code = body.strip()
    if not code:
        return False
    return len(code.split("\n")) > min_lines or len(code) > min_chars


def should_surface(block: RawBlock, settings: EngineConfig | None = None) -> bool:
    """Apply the surfacing rules to a single block.

    Typed blocks of a known kind and diagram blocks always surface. Generic
    code surfaces only once it is substantial. Open code blocks follow the
    same rule, so they appear as soon as they grow past the threshold.
    """
    if block.kind is None:
        return False
    if block.typed or block.kind == ArtifactKind.DIAGRAM:
        return True
    cfg = settings or EngineConfig()
    return is_substantial(block.body, cfg.min_code_lines, cfg.min_code_chars)


def scan(
    buffer: str,
    settings: EngineConfig | None = None,
    *,
    partial: bool = False,
) -> List[RawBlock]:
    """Return the blocks in ``buffer`` that should surface as artifacts."""
    surfaced = []
    for block in scan_blocks(buffer, partial=partial):
        if block.typed and block.kind is None:
            logger.debug("Ignoring typed block with unknown kind %r at %d",
                         block.tag_kind, block.ordinal)
            continue
        if should_surface(block, settings):
            surfaced.append(block)
    return surfaced


def has_artifacts(buffer: str, settings: EngineConfig | None = None) -> bool:
    """Cheap check: does a complete buffer contain any surfacing block?"""
    return bool(scan(buffer, settings))


def count_artifacts(buffer: str, settings: EngineConfig | None = None) -> int:
    return len(scan(buffer, settings))
