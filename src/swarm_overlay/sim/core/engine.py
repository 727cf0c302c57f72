from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Dict, Iterable, List, Optional

from pygame.math import Vector2

from .agent import Agent, AgentState
from .clock import FrameClock
from .config import EngineConfig
from .registry import RegistryDelta, TargetRegistry
from .rng import DeterministicRng
from .target import FrameSize, Target
from ..systems import assignment as assignment_system
from ..systems import metrics as metrics_system
from ..systems import steering
from ..systems.assignment import Assignment
from ..systems.detection import TargetMailbox
from ..systems.normalizer import TargetNormalizer
from ..types.metrics import FrameMetrics
from ..types.snapshot import Snapshot, SnapshotCanvas, SnapshotMetadata
from ..utils.math2d import _clamp_value

logger = logging.getLogger(__name__)

_LAYOUT_RNG_SALT = 0x5EED0F1A7E0C0DE5


class SwarmEngine:
    """Owns the agent pool, the per-modality registries and the current bindings.

    Call `frame()` once per render tick. Detector results go through
    `push_targets()` (non-blocking, picked up on the next frame) or
    `update_targets()` (applied immediately).
    """

    def __init__(self, config: EngineConfig, canvas: Optional[FrameSize] = None):
        self._config = config
        self._canvas = canvas or FrameSize(config.canvas_width, config.canvas_height)
        self._rng = DeterministicRng(config.seed)
        self._layout_rng = DeterministicRng((int(config.seed) ^ _LAYOUT_RNG_SALT) & 0xFFFFFFFFFFFFFFFF)
        self._clock = FrameClock(config.max_dt)
        self._mailbox = TargetMailbox()
        self._registries: Dict[str, TargetRegistry] = {
            modality.name: TargetRegistry(sort_by_id=config.sort_targets_by_id) for modality in config.modalities
        }
        self._normalizers: Dict[str, TargetNormalizer] = {}
        self._min_targets = {modality.name: modality.min_targets for modality in config.modalities}
        self._agents: List[Agent] = []
        self._assignment: Assignment = {}
        self._active_modality: Optional[str] = None
        self._assignment_cycles = 0
        self._last_assignment_time: Optional[float] = None
        self._dirty = False
        self._tick = 0
        self._metrics: FrameMetrics | None = None
        self._bootstrap_agents()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def agents(self) -> List[Agent]:
        return self._agents

    @property
    def canvas(self) -> FrameSize:
        return self._canvas

    @property
    def clock(self) -> FrameClock:
        return self._clock

    @property
    def mailbox(self) -> TargetMailbox:
        return self._mailbox

    @property
    def assignment(self) -> Assignment:
        return dict(self._assignment)

    @property
    def active_modality(self) -> Optional[str]:
        return self._active_modality

    @property
    def assignment_cycles(self) -> int:
        return self._assignment_cycles

    @property
    def metrics(self) -> FrameMetrics | None:
        return self._metrics

    @property
    def tick(self) -> int:
        return self._tick

    def registry(self, modality: str) -> TargetRegistry:
        return self._registries[modality]

    def normalizer(self, modality: str) -> TargetNormalizer:
        normalizer = self._normalizers.get(modality)
        if normalizer is None:
            normalizer = TargetNormalizer(self._config.modality(modality), self._canvas)
            self._normalizers[modality] = normalizer
        return normalizer

    def active_targets(self) -> List[Target]:
        if self._active_modality is None:
            return []
        return self._registries[self._active_modality].current_targets()

    def reset(self) -> None:
        self._rng.reset()
        self._layout_rng.reset()
        self._clock.reset()
        self._mailbox.clear()
        for registry in self._registries.values():
            registry.clear()
        self._agents.clear()
        self._assignment = {}
        self._active_modality = None
        self._assignment_cycles = 0
        self._last_assignment_time = None
        self._dirty = False
        self._tick = 0
        self._metrics = None
        self._bootstrap_agents()
        logger.info("engine reset: %d agents on %gx%g canvas", len(self._agents), self._canvas.width, self._canvas.height)

    def resize(self, width: float, height: float) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f"canvas must have a positive size, got {width}x{height}")
        self._canvas = FrameSize(float(width), float(height))
        for normalizer in self._normalizers.values():
            normalizer.set_canvas(self._canvas)
        for agent in self._agents:
            steering.apply_boundary(agent, self._canvas, self._config.boundary_mode)
            agent.wander_goal = self._clamp_goal(agent, agent.wander_goal)
        self._dirty = True

    def push_targets(self, modality: str, targets: Iterable[Target]) -> None:
        if modality not in self._registries:
            raise KeyError(f"unknown modality: {modality}")
        self._mailbox.publish(modality, list(targets))

    def push_raw(self, modality: str, raw: Any, frame: Optional[FrameSize] = None) -> int:
        targets = self.normalizer(modality).normalize(raw, frame)
        self.push_targets(modality, targets)
        return len(targets)

    def update_targets(self, modality: str, targets: Iterable[Target]) -> RegistryDelta:
        delta = self._registries[modality].update(targets)
        self._dirty = True
        if delta.changed:
            logger.debug(
                "%s: +%d -%d targets (%d kept)",
                modality,
                len(delta.appeared),
                len(delta.disappeared),
                len(delta.persisted),
            )
        return delta

    def drain_mailbox(self) -> int:
        batches = self._mailbox.drain()
        for batch in batches:
            self.update_targets(batch.modality, batch.targets)
        return len(batches)

    def assign(self, now: Optional[float] = None) -> Assignment:
        """Run one assignment cycle against the current registries."""
        config = self._config
        active = assignment_system.select_modality(self._registries, config.modality_priority, self._min_targets)
        if active != self._active_modality:
            logger.debug("active modality %s -> %s", self._active_modality, active)
        self._active_modality = active
        registry = self._registries[active] if active is not None else None
        assignment_system.release_stale(self._agents, registry, hide=config.hide_idle)
        targets = registry.current_targets() if registry is not None else []
        policy = config.policy_for(active)
        assignment = assignment_system.run_policy(policy, self._agents, targets, config.max_agents_per_target)

        for index, agent in enumerate(self._agents):
            binding = assignment.get(index)
            if binding is None:
                agent.release(hide=config.hide_idle)
                continue
            point = Vector2(binding.point[0] - agent.size.x * 0.5, binding.point[1] - agent.size.y * 0.5)
            agent.bind(binding.target_id, self._clamp_goal(agent, point))

        self._assignment = assignment
        self._assignment_cycles += 1
        self._dirty = False
        self._last_assignment_time = now if now is not None else self._clock.last_time
        return dict(assignment)

    def step(self, dt: float) -> steering.StepStats:
        return steering.integrate(self._agents, self._config, dt, self._canvas, self._rng)

    def frame(self, now: Optional[float] = None) -> FrameMetrics:
        start = perf_counter()
        dt = self._clock.tick(now)
        now = self._clock.last_time
        self.drain_mailbox()
        reassigned = False
        if self._dirty or self._assignment_due(now):
            self.assign(now)
            reassigned = True
        stats = self.step(dt)
        elapsed_ms = (perf_counter() - start) * 1000.0
        metrics = metrics_system.create_metrics(
            self._tick,
            self._agents,
            len(self.active_targets()),
            self._active_modality,
            self._assignment_cycles,
            reassigned,
            stats,
            elapsed_ms,
        )
        self._metrics = metrics
        self._tick += 1
        return metrics

    def snapshot(self) -> Snapshot:
        metrics = self._metrics if self._metrics is not None else self._idle_metrics()
        return Snapshot(
            tick=self._tick,
            metrics=metrics,
            agents=[self._agent_snapshot(agent) for agent in self._agents],
            targets=[self._target_snapshot(target) for target in self.active_targets()],
            canvas=SnapshotCanvas(width=self._canvas.width, height=self._canvas.height),
            metadata=SnapshotMetadata(
                agent_count=len(self._agents),
                link_distance=self._config.link_distance,
                max_dt=self._config.max_dt,
                seed=self._config.seed,
                config_version=self._config.config_version,
            ),
        )

    def _assignment_due(self, now: Optional[float]) -> bool:
        interval = self._config.assignment_interval
        if interval <= 0.0 or now is None:
            return False
        if self._last_assignment_time is None:
            return True
        return now - self._last_assignment_time >= interval

    def _bootstrap_agents(self) -> None:
        config = self._config
        for index in range(config.agent_count):
            jitter = config.agent_size_jitter
            width = config.agent_size * (1.0 + self._layout_rng.next_range(-jitter, jitter)) if jitter > 0 else config.agent_size
            height = config.agent_size * (1.0 + self._layout_rng.next_range(-jitter, jitter)) if jitter > 0 else config.agent_size
            speed = config.speed * (1.0 - self._layout_rng.next_range(0.0, config.speed_jitter)) if config.speed_jitter > 0 else config.speed
            agent = Agent(
                id=index,
                position=Vector2(),
                size=Vector2(width, height),
                speed=speed,
                visible=not config.hide_idle,
                state=AgentState.HIDDEN if config.hide_idle else AgentState.IDLE,
            )
            max_x, max_y = steering.bounds_for(agent, self._canvas)
            agent.position.update(self._layout_rng.next_range(0.0, max_x), self._layout_rng.next_range(0.0, max_y))
            agent.wander_goal = steering.random_waypoint(agent, self._canvas, self._layout_rng)
            self._agents.append(agent)

    def _clamp_goal(self, agent: Agent, point: Vector2) -> Vector2:
        max_x, max_y = steering.bounds_for(agent, self._canvas)
        return Vector2(_clamp_value(point.x, 0.0, max_x), _clamp_value(point.y, 0.0, max_y))

    def _idle_metrics(self) -> FrameMetrics:
        return metrics_system.create_metrics(
            self._tick,
            self._agents,
            len(self.active_targets()),
            self._active_modality,
            self._assignment_cycles,
            False,
            steering.StepStats(),
            0.0,
        )

    @staticmethod
    def _agent_snapshot(agent: Agent) -> Dict[str, Any]:
        return {
            "id": agent.id,
            "x": agent.position.x,
            "y": agent.position.y,
            "w": agent.size.x,
            "h": agent.size.y,
            "vx": agent.velocity.x,
            "vy": agent.velocity.y,
            "visible": agent.visible,
            "state": agent.state.value,
            "target": agent.bound_target_id,
        }

    @staticmethod
    def _target_snapshot(target: Target) -> Dict[str, Any]:
        return {
            "id": target.id,
            "kind": target.kind.value,
            "x": target.position[0],
            "y": target.position[1],
            "w": None if target.extent is None else target.extent[0],
            "h": None if target.extent is None else target.extent[1],
            "modality": target.modality,
            "label": target.label,
        }
