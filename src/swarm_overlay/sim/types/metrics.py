from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(slots=True)
class FrameMetrics:
    tick: int
    dt: float
    targets: int
    active_modality: Optional[str]
    bound: int
    visible: int
    idle: int
    assignment_cycles: int
    reassigned: bool
    repulsion_pairs: int
    mean_displacement: float
    max_displacement: float
    frame_duration_ms: float = 0.0
