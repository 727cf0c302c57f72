from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from .metrics import FrameMetrics


@dataclass(slots=True)
class Snapshot:
    tick: int
    metrics: FrameMetrics
    agents: List[Dict[str, Any]]
    targets: List[Dict[str, Any]]
    canvas: "SnapshotCanvas"
    metadata: "SnapshotMetadata"


@dataclass(slots=True)
class SnapshotCanvas:
    width: float
    height: float


@dataclass(slots=True)
class SnapshotMetadata:
    agent_count: int
    link_distance: float
    max_dt: float
    seed: int
    config_version: str
