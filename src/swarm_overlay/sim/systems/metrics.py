from __future__ import annotations

from typing import Optional, Sequence

from ..core.agent import Agent
from ..types.metrics import FrameMetrics
from .steering import StepStats


def create_metrics(
    tick: int,
    agents: Sequence[Agent],
    target_count: int,
    active_modality: Optional[str],
    assignment_cycles: int,
    reassigned: bool,
    stats: StepStats,
    duration_ms: float,
) -> FrameMetrics:
    bound = 0
    visible = 0
    for agent in agents:
        if agent.bound_target_id is not None:
            bound += 1
        if agent.visible:
            visible += 1
    return FrameMetrics(
        tick=tick,
        dt=stats.dt,
        targets=target_count,
        active_modality=active_modality,
        bound=bound,
        visible=visible,
        idle=len(agents) - bound,
        assignment_cycles=assignment_cycles,
        reassigned=reassigned,
        repulsion_pairs=stats.repulsion_pairs,
        mean_displacement=stats.mean_displacement,
        max_displacement=stats.max_displacement,
        frame_duration_ms=duration_ms,
    )
