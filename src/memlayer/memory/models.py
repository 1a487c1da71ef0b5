"""Event model: event types, payload variants, retention levels and result types.

Each event type carries its own payload dataclass. ``searchable_text`` is the
text indexed for keyword search and shown in previews; ``embedding_text`` is
what the outbox hands to the embedding backend.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Union

from memlayer.errors import ValidationError
from memlayer.memory.privacy import truncate_content


class EventType(str, Enum):
    PROMPT = "prompt"
    RESPONSE = "response"
    TOOL_OBSERVATION = "tool-observation"
    INSIGHT = "insight"
    SESSION_START = "session-start"
    SESSION_END = "session-end"

    @classmethod
    def parse(cls, value: str | EventType) -> EventType:
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(t.value for t in cls)
            raise ValidationError(f"unknown event type {value!r} (expected one of: {allowed})")


class MemoryLevel(IntEnum):
    """Retention level. L4 is exempt from retention pruning."""

    L0 = 0
    L1 = 1
    L2 = 2
    L3 = 3
    L4 = 4

    @property
    def label(self) -> str:
        return f"L{int(self)}"


# ── Payload variants ─────────────────────────────────────


def _clamp_value(value: Any, max_length: int) -> Any:
    """Truncate every string inside a JSON-like value."""
    if isinstance(value, str):
        return truncate_content(value, max_length)
    if isinstance(value, dict):
        return {k: _clamp_value(v, max_length) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_clamp_value(v, max_length) for v in value]
    return value


@dataclass(frozen=True)
class TextPayload:
    """Prompt and response payload."""

    text: str

    def searchable_text(self) -> str:
        return self.text

    def embedding_text(self) -> str:
        return self.text

    def clamp(self, max_length: int) -> TextPayload:
        return replace(self, text=truncate_content(self.text, max_length))


@dataclass(frozen=True)
class ToolMetadata:
    file_path: str | None = None
    command: str | None = None
    pattern: str | None = None
    match_count: int | None = None
    url: str | None = None
    exit_code: int | None = None
    line_count: int | None = None


@dataclass(frozen=True)
class ToolObservationPayload:
    tool_name: str
    tool_output: str
    tool_input: dict = field(default_factory=dict)
    success: bool = True
    duration_ms: int = 0
    error_message: str | None = None
    metadata: ToolMetadata = field(default_factory=ToolMetadata)

    def searchable_text(self) -> str:
        status = "ok" if self.success else "failed"
        head = f"[{self.tool_name}] ({status})"
        ref = self.metadata.file_path or self.metadata.command or self.metadata.pattern or self.metadata.url
        if ref:
            head += f" {ref}"
        return f"{head}\n{self.tool_output}" if self.tool_output else head

    def embedding_text(self) -> str:
        # Raw tool output is noise for similarity search: name, key metadata and outcome only.
        parts = [f"Tool: {self.tool_name}"]
        meta = self.metadata
        if meta.file_path:
            parts.append(f"File: {meta.file_path}")
        if meta.command:
            parts.append(f"Command: {meta.command[:200]}")
        if meta.pattern:
            parts.append(f"Pattern: {meta.pattern}")
        if meta.match_count is not None:
            parts.append(f"Matches: {meta.match_count}")
        if meta.url:
            parts.append(f"URL: {meta.url}")
        if meta.exit_code is not None:
            parts.append(f"Exit code: {meta.exit_code}")
        parts.append("Result: success" if self.success else "Result: failed")
        if self.error_message:
            parts.append(f"Error: {self.error_message[:200]}")
        return "\n".join(parts)

    def clamp(self, max_length: int) -> ToolObservationPayload:
        error = self.error_message
        return replace(
            self,
            tool_output=truncate_content(self.tool_output, max_length),
            tool_input=_clamp_value(self.tool_input, max_length),
            error_message=truncate_content(error, max_length) if error else error,
        )

    def dedupe_text(self) -> str:
        # Same output from different inputs (two edits of one file) is not a duplicate.
        canonical = json.dumps(self.tool_input, sort_keys=True, default=str, ensure_ascii=False)
        digest = hashlib.sha256(canonical.encode()).hexdigest()
        return f"{self.searchable_text()}\n{digest}"


@dataclass(frozen=True)
class InsightPayload:
    text: str
    insight_type: str = "pattern"
    confidence: float = 0.5
    source_event_ids: tuple[str, ...] = ()

    def searchable_text(self) -> str:
        return self.text

    def embedding_text(self) -> str:
        return f"{self.insight_type}: {self.text}"

    def clamp(self, max_length: int) -> InsightPayload:
        return replace(self, text=truncate_content(self.text, max_length))


@dataclass(frozen=True)
class SessionMarkerPayload:
    """session-start / session-end payload. ``text`` holds the summary, if any."""

    text: str = ""
    project_path: str | None = None

    def searchable_text(self) -> str:
        return self.text

    def embedding_text(self) -> str:
        return self.text

    def clamp(self, max_length: int) -> SessionMarkerPayload:
        return replace(self, text=truncate_content(self.text, max_length))


Payload = Union[TextPayload, ToolObservationPayload, InsightPayload, SessionMarkerPayload]

_PAYLOAD_TYPES: dict[EventType, type] = {
    EventType.PROMPT: TextPayload,
    EventType.RESPONSE: TextPayload,
    EventType.TOOL_OBSERVATION: ToolObservationPayload,
    EventType.INSIGHT: InsightPayload,
    EventType.SESSION_START: SessionMarkerPayload,
    EventType.SESSION_END: SessionMarkerPayload,
}


def build_payload(event_type: EventType, content: str, metadata: dict | None = None) -> Payload:
    """Build the typed payload for ``event_type`` from caller content + metadata.

    Raises ValidationError for missing or malformed fields.
    """
    metadata = metadata or {}
    if not isinstance(content, str):
        raise ValidationError("content must be a string")

    if event_type in (EventType.PROMPT, EventType.RESPONSE):
        if not content.strip():
            raise ValidationError(f"{event_type.value} content must not be empty")
        return TextPayload(text=content)

    if event_type == EventType.TOOL_OBSERVATION:
        tool_name = metadata.get("tool_name")
        if not tool_name or not isinstance(tool_name, str):
            raise ValidationError("tool-observation requires metadata.tool_name")
        tool_input = metadata.get("tool_input") or {}
        if not isinstance(tool_input, dict):
            raise ValidationError("tool-observation metadata.tool_input must be a mapping")
        tool_meta = metadata.get("tool_metadata") or {}
        if isinstance(tool_meta, ToolMetadata):
            tool_meta = asdict(tool_meta)
        known = {k: v for k, v in tool_meta.items() if k in ToolMetadata.__dataclass_fields__}
        try:
            duration_ms = int(metadata.get("duration_ms", 0) or 0)
        except (TypeError, ValueError):
            raise ValidationError("tool-observation metadata.duration_ms must be an integer")
        return ToolObservationPayload(
            tool_name=tool_name,
            tool_output=content,
            tool_input=tool_input,
            success=bool(metadata.get("success", True)),
            duration_ms=duration_ms,
            error_message=metadata.get("error_message"),
            metadata=ToolMetadata(**known),
        )

    if event_type == EventType.INSIGHT:
        if not content.strip():
            raise ValidationError("insight content must not be empty")
        try:
            confidence = float(metadata.get("confidence", 0.5))
        except (TypeError, ValueError):
            raise ValidationError("insight confidence must be a number")
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError("insight confidence must be within [0, 1]")
        sources = metadata.get("source_event_ids") or ()
        if not isinstance(sources, (list, tuple)) or not all(isinstance(s, str) for s in sources):
            raise ValidationError("insight metadata.source_event_ids must be a list of event ids")
        return InsightPayload(
            text=content,
            insight_type=str(metadata.get("insight_type", "pattern")),
            confidence=confidence,
            source_event_ids=tuple(sources),
        )

    return SessionMarkerPayload(text=content, project_path=metadata.get("project_path"))


def payload_to_json(payload: Payload) -> str:
    return json.dumps(asdict(payload), ensure_ascii=False)


def payload_from_json(event_type: EventType, raw: str) -> Payload:
    data = json.loads(raw)
    cls = _PAYLOAD_TYPES[event_type]
    if cls is ToolObservationPayload:
        data["metadata"] = ToolMetadata(**data.get("metadata", {}))
    if cls is InsightPayload:
        data["source_event_ids"] = tuple(data.get("source_event_ids", ()))
    return cls(**data)


def dedupe_text(payload: Payload) -> str:
    """What the ledger compares to detect a duplicate append."""
    if isinstance(payload, ToolObservationPayload):
        return payload.dedupe_text()
    return payload.searchable_text()


# ── Ledger records ───────────────────────────────────────


@dataclass(frozen=True)
class Event:
    """Immutable unit of memory. Only ``level`` and usage counters change after append."""

    id: str
    type: EventType
    session_id: str
    timestamp: datetime
    payload: Payload
    level: MemoryLevel = MemoryLevel.L0
    seq: int = 0
    access_count: int = 0

    @property
    def text(self) -> str:
        return self.payload.searchable_text()


@dataclass(frozen=True)
class AppendResult:
    event_id: str
    is_duplicate: bool


@dataclass(frozen=True)
class OutboxEntry:
    event_id: str
    enqueued_at: datetime
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    processed_at: datetime | None = None
    attempts: int = 0


@dataclass(frozen=True)
class VectorRecord:
    event_id: str
    embedding: list[float]
    indexed_at: datetime
    session_id: str = ""
    event_type: str = ""


@dataclass(frozen=True)
class CitationUsage:
    usage_id: str
    citation_id: str
    session_id: str
    used_at: datetime
    context_query: str | None = None


# ── Progressive disclosure results ───────────────────────


@dataclass(frozen=True)
class IndexItem:
    """Layer 1: one ranked match."""

    event_id: str
    summary: str
    score: float
    type: EventType
    timestamp: datetime
    session_id: str
    citation_id: str | None = None


@dataclass(frozen=True)
class TimelineItem:
    """Layer 2: one event from a window around a target."""

    event_id: str
    timestamp: datetime
    type: EventType
    preview: str
    is_target: bool
    session_id: str


@dataclass(frozen=True)
class DetailMetadata:
    token_count: int
    has_code: bool
    files: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()


@dataclass(frozen=True)
class DetailItem:
    """Layer 3: full payload plus derived metadata and neighbour relations."""

    event_id: str
    type: EventType
    timestamp: datetime
    session_id: str
    content: str
    payload: dict
    level: MemoryLevel
    metadata: DetailMetadata
    citation_id: str | None = None
    previous_id: str | None = None
    next_id: str | None = None


@dataclass
class SearchMeta:
    total_matches: int
    expanded_count: int
    estimated_tokens: int
    expansion_reason: str
    expansion_error: str | None = None
    degraded: str | None = None
    citation_error: str | None = None


@dataclass
class ProgressiveSearchResult:
    index: list[IndexItem]
    meta: SearchMeta
    timeline: list[TimelineItem] | None = None
    details: list[DetailItem] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CitedEvent:
    citation_id: str
    event: Event
    related_previous: Event | None = None
    related_next: Event | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MemoryStats:
    event_count: int
    vector_count: int | None
    session_count: int
    level_counts: dict[str, int]
    pending_embeddings: int = 0
    failed_embeddings: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
