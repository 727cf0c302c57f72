"""Agent-to-target assignment policies.

Every policy here is deterministic: with an unchanged target list and
unchanged agent positions it returns the same bindings, so re-running an
assignment cycle on a quiet scene never reshuffles the pool.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from pygame.math import Vector2

from ..core.agent import Agent
from ..core.config import AssignmentPolicy
from ..core.registry import TargetRegistry
from ..core.target import Target, TargetKind


@dataclass(frozen=True, slots=True)
class Binding:
    target_id: str
    point: tuple[float, float]


Assignment = Dict[int, Binding]


def perimeter_point(target: Target, distance: float) -> Vector2:
    """Point at arc length `distance` along a box, clockwise from its top-left corner.

    The walk covers the top edge left to right, the right edge top to bottom,
    the bottom edge right to left, then the left edge bottom to top.
    """
    origin = target.origin
    if target.extent is None:
        return origin
    width, height = target.extent
    perimeter = 2.0 * (width + height)
    if perimeter <= 0.0:
        return origin
    p = distance % perimeter
    if p < width:
        return Vector2(origin.x + p, origin.y)
    p -= width
    if p < height:
        return Vector2(origin.x + width, origin.y + p)
    p -= height
    if p < width:
        return Vector2(origin.x + width - p, origin.y + height)
    p -= width
    return Vector2(origin.x, origin.y + height - p)


def perimeter_points(target: Target, count: int) -> List[Vector2]:
    if count <= 0:
        return []
    if target.kind != TargetKind.BOX or target.extent is None:
        return [target.center for _ in range(count)]
    spacing = target.perimeter / count
    return [perimeter_point(target, k * spacing) for k in range(count)]


def _binding(target: Target, point: Optional[Vector2] = None) -> Binding:
    if point is None:
        return Binding(target.id, target.position)
    return Binding(target.id, (point.x, point.y))


def assign_one_to_one(agents: Sequence[Agent], targets: Sequence[Target]) -> Assignment:
    return {index: _binding(targets[index]) for index in range(min(len(agents), len(targets)))}


def assign_round_robin(agents: Sequence[Agent], targets: Sequence[Target]) -> Assignment:
    if not targets:
        return {}
    count = len(targets)
    return {index: _binding(targets[index % count]) for index in range(len(agents))}


def assign_nearest(
    agents: Sequence[Agent], targets: Sequence[Target], cap: Optional[int] = None
) -> Assignment:
    assignment: Assignment = {}
    if not targets:
        return assignment
    load: Dict[str, int] = {}
    for index, agent in enumerate(agents):
        center = agent.center
        best: Optional[Target] = None
        best_dist_sq = float("inf")
        for target in targets:
            if cap is not None and load.get(target.id, 0) >= cap:
                continue
            dx = target.position[0] - center.x
            dy = target.position[1] - center.y
            dist_sq = dx * dx + dy * dy
            # Strict comparison keeps the first target on ties.
            if dist_sq < best_dist_sq:
                best = target
                best_dist_sq = dist_sq
        if best is None:
            continue
        load[best.id] = load.get(best.id, 0) + 1
        assignment[index] = _binding(best)
    return assignment


def assign_perimeter(
    agents: Sequence[Agent], targets: Sequence[Target], cap: Optional[int] = None
) -> Assignment:
    assignment: Assignment = {}
    remaining_agents = len(agents)
    next_agent = 0
    for position, target in enumerate(targets):
        if remaining_agents <= 0:
            break
        remaining_targets = len(targets) - position
        share = max(1, remaining_agents // remaining_targets)
        if target.kind != TargetKind.BOX:
            share = 1
        elif cap is not None:
            share = min(share, cap)
        for point in perimeter_points(target, share):
            assignment[next_agent] = _binding(target, point)
            next_agent += 1
        remaining_agents -= share
    return assignment


def run_policy(
    policy: AssignmentPolicy,
    agents: Sequence[Agent],
    targets: Sequence[Target],
    cap: Optional[int] = None,
) -> Assignment:
    if policy == AssignmentPolicy.ONE_TO_ONE:
        return assign_one_to_one(agents, targets)
    if policy == AssignmentPolicy.NEAREST:
        return assign_nearest(agents, targets, cap)
    if policy == AssignmentPolicy.PERIMETER:
        return assign_perimeter(agents, targets, cap)
    return assign_round_robin(agents, targets)


def select_modality(
    registries: Mapping[str, TargetRegistry],
    priority: Sequence[str],
    min_targets: Mapping[str, int],
) -> Optional[str]:
    """First modality in priority order holding at least its minimum target count."""
    for name in priority:
        registry = registries.get(name)
        if registry is None:
            continue
        if len(registry) > 0 and len(registry) >= min_targets.get(name, 1):
            return name
    return None


def release_stale(agents: Sequence[Agent], registry: Optional[TargetRegistry], hide: bool = False) -> List[int]:
    """Unbind agents whose target is gone from `registry` (or when no modality is active)."""
    released: List[int] = []
    for index, agent in enumerate(agents):
        if agent.bound_target_id is None:
            continue
        if registry is None or not registry.contains(agent.bound_target_id):
            agent.release(hide=hide)
            released.append(index)
    return released


def max_references(assignment: Assignment) -> int:
    counts: Dict[str, int] = {}
    for binding in assignment.values():
        counts[binding.target_id] = counts.get(binding.target_id, 0) + 1
    return max(counts.values(), default=0)
