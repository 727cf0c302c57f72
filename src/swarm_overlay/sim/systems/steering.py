"""Per-frame agent integration.

Repulsion is evaluated over every pair of visible agents each frame, which is
O(n^2). That is fine for overlay-sized pools (up to roughly 100 agents); past
that a spatial index would be needed.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Sequence

from pygame.math import Vector2

from ..core.agent import Agent
from ..core.clock import clamp_dt
from ..core.config import BoundaryMode, EngineConfig, PursuitMode
from ..core.rng import DeterministicRng
from ..core.target import FrameSize
from ..utils.math2d import _clamp_length_xy_f, _clamp_value, _index_direction, _is_finite_xy

logger = logging.getLogger(__name__)

# Repulsion falls off with 1/d^2; distances below 1px are treated as 1px.
_MIN_REPEL_DIST_SQ = 1.0


@dataclass(slots=True)
class StepStats:
    dt: float = 0.0
    repulsion_pairs: int = 0
    mean_displacement: float = 0.0
    max_displacement: float = 0.0
    repaired: int = 0


def bounds_for(agent: Agent, canvas: FrameSize) -> tuple[float, float]:
    return max(0.0, canvas.width - agent.size.x), max(0.0, canvas.height - agent.size.y)


def repulsion(agents: Sequence[Agent], config: EngineConfig) -> tuple[List[Vector2], int]:
    """Accumulated repulsion for each agent, plus the number of interacting pairs."""
    forces = [Vector2() for _ in agents]
    radius = config.repel_distance
    strength = config.repel_force
    if radius <= 0.0 or strength <= 0.0:
        return forces, 0
    radius_sq = radius * radius
    centers = [agent.center for agent in agents]
    pairs = 0
    count = len(agents)
    for i in range(count):
        if not agents[i].visible:
            continue
        ci = centers[i]
        for j in range(i + 1, count):
            if not agents[j].visible:
                continue
            dx = centers[j].x - ci.x
            dy = centers[j].y - ci.y
            dist_sq = dx * dx + dy * dy
            if dist_sq >= radius_sq:
                continue
            pairs += 1
            if dist_sq <= 1e-12:
                ux, uy = _index_direction(i)
            else:
                inv_len = 1.0 / math.sqrt(dist_sq)
                ux, uy = dx * inv_len, dy * inv_len
            magnitude = strength / max(dist_sq, _MIN_REPEL_DIST_SQ)
            forces[i].x -= ux * magnitude
            forces[i].y -= uy * magnitude
            forces[j].x += ux * magnitude
            forces[j].y += uy * magnitude
    return forces, pairs


def random_waypoint(agent: Agent, canvas: FrameSize, rng: DeterministicRng) -> Vector2:
    max_x, max_y = bounds_for(agent, canvas)
    return Vector2(rng.next_range(0.0, max_x), rng.next_range(0.0, max_y))


def wander_direction(agent: Agent, config: EngineConfig, rng: DeterministicRng, dt: float) -> Vector2:
    refresh = max(1e-4, config.wander_refresh)
    if agent.wander_time <= 0.0 or agent.wander_dir.length_squared() < 1e-10:
        agent.wander_dir = rng.next_unit_circle()
        agent.wander_time = refresh
    else:
        agent.wander_time -= dt
    return agent.wander_dir


def _without_opposing(x: float, y: float, push: Vector2) -> tuple[float, float]:
    """Drop the part of (x, y) that points against `push`."""
    push_sq = push.x * push.x + push.y * push.y
    if push_sq <= 1e-12:
        return x, y
    along = x * push.x + y * push.y
    if along >= 0.0:
        return x, y
    scale = along / push_sq
    return x - push.x * scale, y - push.y * scale


def _pursuit_goal(agent: Agent, canvas: FrameSize, config: EngineConfig, rng: DeterministicRng) -> tuple[Vector2, float]:
    if agent.goal is not None:
        return agent.goal, agent.speed
    offset = agent.wander_goal - agent.position
    if offset.length_squared() <= config.arrive_radius * config.arrive_radius:
        agent.wander_goal = random_waypoint(agent, canvas, rng)
    return agent.wander_goal, min(agent.speed, config.wander_speed)


def _bounded_step(
    agent: Agent, push: Vector2, config: EngineConfig, canvas: FrameSize, rng: DeterministicRng, dt: float
) -> tuple[float, float]:
    goal, speed = _pursuit_goal(agent, canvas, config, rng)
    dx = goal.x - agent.position.x
    dy = goal.y - agent.position.y
    dist = math.sqrt(dx * dx + dy * dy)
    step_x = 0.0
    step_y = 0.0
    if dist > 1e-9:
        step = min(dist, speed * dt)
        step_x = dx / dist * step
        step_y = dy / dist * step
        if agent.goal is None:
            # Idle drift never closes in on a neighbour that is pushing back.
            step_x, step_y = _without_opposing(step_x, step_y, push)
    step_x += push.x * dt
    step_y += push.y * dt
    return _clamp_length_xy_f(step_x, step_y, agent.speed * dt)


def _force_step(
    agent: Agent, push: Vector2, config: EngineConfig, rng: DeterministicRng, dt: float
) -> tuple[float, float]:
    desired_x = push.x
    desired_y = push.y
    if agent.goal is not None:
        dx = agent.goal.x - agent.position.x
        dy = agent.goal.y - agent.position.y
        dist = math.sqrt(dx * dx + dy * dy)
        if dist > 1e-9:
            # Slow to exactly reach the goal within one frame instead of orbiting it.
            speed = min(agent.speed, dist / dt)
            desired_x += dx / dist * speed
            desired_y += dy / dist * speed
    else:
        wander = wander_direction(agent, config, rng, dt)
        wander_speed = min(agent.speed, config.wander_speed)
        wander_x, wander_y = _without_opposing(wander.x * wander_speed, wander.y * wander_speed, push)
        desired_x += wander_x
        desired_y += wander_y
    accel_x, accel_y = _clamp_length_xy_f(
        desired_x - agent.velocity.x, desired_y - agent.velocity.y, config.max_acceleration
    )
    vel_x, vel_y = _clamp_length_xy_f(
        agent.velocity.x + accel_x * dt, agent.velocity.y + accel_y * dt, agent.speed
    )
    agent.velocity.update(vel_x, vel_y)
    return vel_x * dt, vel_y * dt


def _reflect(x: float, v: float, upper: float) -> tuple[float, float, bool]:
    if upper <= 0.0:
        return 0.0, 0.0, False
    flipped = False
    while x < 0.0 or x > upper:
        if x < 0.0:
            x = -x
        else:
            x = 2.0 * upper - x
        v = -v
        flipped = not flipped
    return x, v, flipped


def apply_boundary(agent: Agent, canvas: FrameSize, mode: BoundaryMode) -> None:
    max_x, max_y = bounds_for(agent, canvas)
    x, y = agent.position.x, agent.position.y
    vx, vy = agent.velocity.x, agent.velocity.y
    if mode == BoundaryMode.REFLECT:
        x, vx, flip_x = _reflect(x, vx, max_x)
        y, vy, flip_y = _reflect(y, vy, max_y)
        # Idle drift keeps heading away from the wall it bounced off.
        if flip_x:
            agent.wander_dir.x = -agent.wander_dir.x
        if flip_y:
            agent.wander_dir.y = -agent.wander_dir.y
    else:
        if x < 0.0 or x > max_x:
            vx = 0.0
        if y < 0.0 or y > max_y:
            vy = 0.0
    agent.position.update(_clamp_value(x, 0.0, max_x), _clamp_value(y, 0.0, max_y))
    agent.velocity.update(vx, vy)


def _repair(agent: Agent, previous: Vector2, canvas: FrameSize) -> None:
    logger.warning("agent %d produced a non-finite position; restoring last valid position", agent.id)
    max_x, max_y = bounds_for(agent, canvas)
    if _is_finite_xy(previous.x, previous.y):
        agent.position.update(_clamp_value(previous.x, 0.0, max_x), _clamp_value(previous.y, 0.0, max_y))
    else:
        agent.position.update(max_x * 0.5, max_y * 0.5)
    agent.velocity.update(0.0, 0.0)
    if agent.goal is not None and not _is_finite_xy(agent.goal.x, agent.goal.y):
        agent.goal = None


def integrate(
    agents: Sequence[Agent],
    config: EngineConfig,
    dt: float,
    canvas: FrameSize,
    rng: DeterministicRng,
) -> StepStats:
    """Advance every agent by one frame of at most `config.max_dt` seconds."""
    dt = clamp_dt(dt, config.max_dt)
    stats = StepStats(dt=dt)
    if dt <= 0.0 or not agents:
        for agent in agents:
            agent.last_displacement = 0.0
        return stats
    forces, stats.repulsion_pairs = repulsion(agents, config)
    total = 0.0
    for agent, push in zip(agents, forces):
        previous = Vector2(agent.position)
        if config.pursuit_mode == PursuitMode.FORCE:
            step_x, step_y = _force_step(agent, push, config, rng, dt)
        else:
            step_x, step_y = _bounded_step(agent, push, config, canvas, rng, dt)
            agent.velocity.update(step_x / dt, step_y / dt)
        agent.position.update(agent.position.x + step_x, agent.position.y + step_y)
        if not _is_finite_xy(agent.position.x, agent.position.y):
            _repair(agent, previous, canvas)
            stats.repaired += 1
        apply_boundary(agent, canvas, config.boundary_mode)
        moved = agent.position.distance_to(previous) if _is_finite_xy(previous.x, previous.y) else 0.0
        agent.last_displacement = moved
        total += moved
        if moved > stats.max_displacement:
            stats.max_displacement = moved
    stats.mean_displacement = total / len(agents)
    return stats
