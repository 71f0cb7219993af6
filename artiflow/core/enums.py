"""Enumerations shared by the extraction kernel and the persistence layer."""

from enum import Enum


class ArtifactKind(str, Enum):
    CODE = "code"
    DIAGRAM = "diagram"
    CHART = "chart"
    TABLE = "table"
    VISUALIZATION = "visualization"
    HEATMAP = "heatmap"
    TREEMAP = "treemap"
    GEOSPATIAL = "geospatial"
    DOCUMENT = "document"
    TEXT = "text"
    IMAGE = "image"
    SHEET = "sheet"


# Kinds that may appear after ``json:`` in a typed fence tag
TYPED_FENCE_KINDS = frozenset({
    ArtifactKind.CHART,
    ArtifactKind.TABLE,
    ArtifactKind.VISUALIZATION,
    ArtifactKind.HEATMAP,
    ArtifactKind.TREEMAP,
    ArtifactKind.GEOSPATIAL,
})


class ArtifactStatus(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"


class ChartType(str, Enum):
    BAR = "bar"
    LINE = "line"
    PIE = "pie"
    AREA = "area"


class VisualizationType(str, Enum):
    KPI = "kpi"
    PROGRESS = "progress"
    CUSTOM = "custom"


class MapType(str, Enum):
    BASIC = "basic"
    SATELLITE = "satellite"
    DARK = "dark"


class PayloadKind(str, Enum):
    TEXT = "text"
    TYPED_DELTA = "typed-delta"
    METADATA = "metadata"
    STATUS = "status"
    ERROR = "error"


class StreamPartType(str, Enum):
    TEXT_DELTA = "text-delta"
    CODE_DELTA = "code-delta"
    CHART_DELTA = "chart-delta"
    SHEET_DELTA = "sheet-delta"
    DOCUMENT_DELTA = "document-delta"
    IMAGE_DELTA = "image-delta"
    METADATA_UPDATE = "metadata-update"
    STATUS_UPDATE = "status-update"
    ERROR = "error"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"
