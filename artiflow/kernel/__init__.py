"""Kernel package — the extraction engine itself.

The kernel is pure with respect to I/O and holds no global state:
- DeltaAccumulator: ordered per-session buffer, the only place ordering is checked
- scan / scan_blocks: fence recognition over a buffer snapshot
- classify / build_artifact: kind registry and payload normalization
- ArtifactTracker / transition: per-artifact lifecycle across snapshots
- ExtractionDiagnostics: recovered failures and aborts (no judgement)
"""

from artiflow.kernel.accumulator import DeltaAccumulator
from artiflow.kernel.diagnostics import ExtractionDiagnostics, ExtractionStats
from artiflow.kernel.normalizer import KIND_REGISTRY, build_artifact, classify, extract_json
from artiflow.kernel.scanner import RawBlock, scan, scan_blocks
from artiflow.kernel.state_machine import (
    ArtifactTracker,
    extract_artifacts,
    extract_from_deltas,
    transition,
)

__all__ = [
    "DeltaAccumulator",
    "ExtractionDiagnostics",
    "ExtractionStats",
    "KIND_REGISTRY",
    "build_artifact",
    "classify",
    "extract_json",
    "RawBlock",
    "scan",
    "scan_blocks",
    "ArtifactTracker",
    "extract_artifacts",
    "extract_from_deltas",
    "transition",
]
