import math
import random

import pytest
from pygame.math import Vector2

from swarm_overlay.sim.core.agent import Agent
from swarm_overlay.sim.core.config import BoundaryMode, EngineConfig, PursuitMode
from swarm_overlay.sim.core.rng import DeterministicRng
from swarm_overlay.sim.core.target import FrameSize
from swarm_overlay.sim.systems.steering import apply_boundary, integrate, repulsion

CANVAS = FrameSize(1000.0, 1000.0)


def _config(**overrides) -> EngineConfig:
    values = dict(
        canvas_width=CANVAS.width,
        canvas_height=CANVAS.height,
        wander_speed=0.0,
        repel_distance=0.0,
        repel_force=0.0,
    )
    values.update(overrides)
    return EngineConfig(**values)


def _agent(index: int, x: float, y: float, speed: float = 100.0, size: float = 20.0) -> Agent:
    agent = Agent(id=index, position=Vector2(x, y), size=Vector2(size, size), speed=speed)
    agent.wander_goal = Vector2(x, y)
    return agent


def _in_bounds(agent: Agent, canvas: FrameSize) -> bool:
    return (
        0.0 <= agent.position.x <= canvas.width - agent.size.x
        and 0.0 <= agent.position.y <= canvas.height - agent.size.y
    )


def test_bounded_step_lands_exactly_on_a_close_goal():
    agent = _agent(0, 0.0, 0.0, speed=1000.0)
    agent.bind("t", Vector2(5.0, 0.0))
    integrate([agent], _config(), 0.05, CANVAS, DeterministicRng(1))
    assert agent.position == Vector2(5.0, 0.0)


def test_bounded_step_moves_at_most_speed_times_dt():
    agent = _agent(0, 0.0, 500.0, speed=100.0)
    agent.bind("t", Vector2(900.0, 500.0))
    stats = integrate([agent], _config(), 0.02, CANVAS, DeterministicRng(1))
    assert agent.position.x == pytest.approx(2.0)
    assert stats.max_displacement == pytest.approx(2.0)


def test_stalled_frame_moves_agent_one_max_dt_step():
    agent = _agent(0, 0.0, 500.0, speed=100.0)
    agent.bind("t", Vector2(900.0, 500.0))
    stats = integrate([agent], _config(max_dt=0.05), 5.0, CANVAS, DeterministicRng(1))
    assert stats.dt == 0.05
    assert agent.position.x == pytest.approx(5.0)


def test_zero_dt_leaves_agents_in_place():
    agent = _agent(0, 100.0, 100.0)
    agent.bind("t", Vector2(900.0, 900.0))
    stats = integrate([agent], _config(), 0.0, CANVAS, DeterministicRng(1))
    assert stats.dt == 0.0
    assert agent.position == Vector2(100.0, 100.0)


@pytest.mark.parametrize("mode", list(PursuitMode))
def test_close_agents_are_pushed_apart(mode):
    config = _config(repel_distance=100.0, repel_force=50000.0, pursuit_mode=mode)
    first = _agent(0, 400.0, 400.0)
    second = _agent(1, 450.0, 400.0)
    before = first.center.distance_to(second.center)

    stats = integrate([first, second], config, 1.0 / 60.0, CANVAS, DeterministicRng(1))

    assert stats.repulsion_pairs == 1
    assert first.center.distance_to(second.center) > before


def test_coincident_agents_separate():
    config = _config(repel_distance=80.0, repel_force=60000.0)
    first = _agent(0, 500.0, 500.0)
    second = _agent(1, 500.0, 500.0)
    integrate([first, second], config, 1.0 / 60.0, CANVAS, DeterministicRng(1))
    assert first.center.distance_to(second.center) > 0.0
    assert math.isfinite(first.position.x) and math.isfinite(second.position.x)


def test_hidden_agents_do_not_repel():
    config = _config(repel_distance=80.0, repel_force=60000.0)
    visible = _agent(0, 500.0, 500.0)
    hidden = _agent(1, 505.0, 500.0)
    hidden.release(hide=True)
    forces, pairs = repulsion([visible, hidden], config)
    assert pairs == 0
    assert forces[0] == Vector2()


@pytest.mark.parametrize("boundary", list(BoundaryMode))
@pytest.mark.parametrize("mode", list(PursuitMode))
def test_agents_never_leave_canvas_or_exceed_their_step(boundary, mode):
    rand = random.Random(7)
    config = _config(
        repel_distance=80.0,
        repel_force=60000.0,
        wander_speed=300.0,
        boundary_mode=boundary,
        pursuit_mode=mode,
    )
    agents = []
    for index in range(20):
        agent = _agent(index, rand.uniform(0.0, 980.0), rand.uniform(0.0, 980.0), speed=rand.uniform(200.0, 1500.0))
        if index % 2 == 0:
            # Goals outside the canvas should still leave the agent in bounds.
            agent.bind("t", Vector2(rand.uniform(-200.0, 1200.0), rand.uniform(-200.0, 1200.0)))
        agents.append(agent)
    rng = DeterministicRng(3)

    for _ in range(200):
        dt = rand.uniform(0.0, 0.2)
        previous = [Vector2(agent.position) for agent in agents]
        integrate(agents, config, dt, CANVAS, rng)
        limit = min(dt, config.max_dt)
        for agent, before in zip(agents, previous):
            assert _in_bounds(agent, CANVAS)
            assert agent.position.distance_to(before) <= agent.speed * limit + 1e-6


def test_force_mode_never_exceeds_agent_speed():
    config = _config(pursuit_mode=PursuitMode.FORCE, max_acceleration=1e6)
    agent = _agent(0, 0.0, 0.0, speed=300.0)
    agent.bind("t", Vector2(900.0, 900.0))
    for _ in range(30):
        integrate([agent], config, 1.0 / 60.0, CANVAS, DeterministicRng(1))
        assert agent.velocity.length() <= 300.0 + 1e-6


def test_reflect_mirrors_position_and_velocity():
    config = _config(pursuit_mode=PursuitMode.FORCE, boundary_mode=BoundaryMode.REFLECT, max_acceleration=0.0)
    agent = _agent(0, 1.0, 500.0, speed=1000.0)
    agent.velocity = Vector2(-100.0, 0.0)
    integrate([agent], config, 0.05, CANVAS, DeterministicRng(1))
    assert agent.position.x == pytest.approx(4.0)
    assert agent.velocity.x == pytest.approx(100.0)


def test_clamp_pins_position_and_stops_outward_velocity():
    config = _config(pursuit_mode=PursuitMode.FORCE, boundary_mode=BoundaryMode.CLAMP, max_acceleration=0.0)
    agent = _agent(0, 1.0, 500.0, speed=1000.0)
    agent.velocity = Vector2(-100.0, 0.0)
    integrate([agent], config, 0.05, CANVAS, DeterministicRng(1))
    assert agent.position.x == 0.0
    assert agent.velocity.x == 0.0


def test_boundary_handles_agents_larger_than_canvas_axis():
    agent = _agent(0, 50.0, 50.0, size=20.0)
    apply_boundary(agent, FrameSize(10.0, 100.0), BoundaryMode.REFLECT)
    assert agent.position.x == 0.0
    assert 0.0 <= agent.position.y <= 80.0


def test_non_finite_goal_is_repaired_without_nan_positions():
    agent = _agent(0, 100.0, 100.0)
    agent.bind("t", Vector2(float("inf"), 0.0))
    stats = integrate([agent], _config(), 0.05, CANVAS, DeterministicRng(1))
    assert stats.repaired == 1
    assert agent.position == Vector2(100.0, 100.0)
    assert agent.goal is None
    assert agent.velocity == Vector2()


def test_idle_agents_repick_waypoint_on_arrival():
    config = _config(wander_speed=200.0, arrive_radius=10.0)
    agent = _agent(0, 500.0, 500.0, speed=200.0)
    agent.wander_goal = Vector2(505.0, 500.0)
    integrate([agent], config, 1.0 / 60.0, CANVAS, DeterministicRng(9))
    assert agent.wander_goal != Vector2(505.0, 500.0)
    assert 0.0 <= agent.wander_goal.x <= 980.0
    assert 0.0 <= agent.wander_goal.y <= 980.0


@pytest.mark.parametrize("mode", list(PursuitMode))
def test_idle_agents_half_repel_distance_apart_separate_despite_wander(mode):
    config = EngineConfig(pursuit_mode=mode)
    canvas = FrameSize(config.canvas_width, config.canvas_height)
    gap = config.repel_distance / 2.0
    for seed in range(200):
        rand = random.Random(seed)
        first = Agent(id=0, position=Vector2(600.0, 330.0), size=Vector2(60.0, 60.0), speed=config.speed)
        second = Agent(id=1, position=Vector2(600.0 + gap, 330.0), size=Vector2(60.0, 60.0), speed=config.speed)
        for agent in (first, second):
            agent.wander_goal = Vector2(rand.uniform(0.0, 1220.0), rand.uniform(0.0, 660.0))
        before = first.center.distance_to(second.center)

        integrate([first, second], config, 1.0 / 60.0, canvas, DeterministicRng(seed))

        assert first.center.distance_to(second.center) > before, f"seed {seed}"
