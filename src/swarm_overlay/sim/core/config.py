from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml


class AssignmentPolicy(str, Enum):
    ONE_TO_ONE = "one_to_one"
    NEAREST = "nearest"
    PERIMETER = "perimeter"
    ROUND_ROBIN = "round_robin"


class BoundaryMode(str, Enum):
    CLAMP = "clamp"
    REFLECT = "reflect"


class PursuitMode(str, Enum):
    BOUNDED_STEP = "bounded_step"
    FORCE = "force"


class SourceFormat(str, Enum):
    BOX = "box"
    LANDMARKS = "landmarks"
    KEYPOINTS = "keypoints"
    COLOR = "color"


@dataclass
class ModalityConfig:
    name: str
    source: SourceFormat = SourceFormat.BOX
    poll_interval: float = 0.2
    min_targets: int = 1
    # Overrides EngineConfig.assignment_policy while this modality owns the pool.
    policy: Optional[AssignmentPolicy] = None
    min_score: float = 0.0
    landmark_indices: Optional[List[int]] = None

    def __post_init__(self) -> None:
        self.source = SourceFormat(self.source)
        if self.policy is not None:
            self.policy = AssignmentPolicy(self.policy)
        if self.poll_interval <= 0.0:
            raise ValueError(f"poll_interval for {self.name} must be positive, got {self.poll_interval}")
        if self.landmark_indices is not None and any(index < 0 for index in self.landmark_indices):
            raise ValueError(f"landmark_indices for {self.name} must be non-negative, got {self.landmark_indices}")


def _default_modalities() -> List[ModalityConfig]:
    return [
        ModalityConfig(name="hands", source=SourceFormat.LANDMARKS, poll_interval=0.05, landmark_indices=[4, 8, 12, 16, 20]),
        ModalityConfig(name="pose", source=SourceFormat.KEYPOINTS, poll_interval=0.1, min_score=0.3),
        ModalityConfig(name="objects", source=SourceFormat.BOX, poll_interval=0.2, min_score=0.5),
        ModalityConfig(name="color", source=SourceFormat.COLOR, poll_interval=0.1),
    ]


@dataclass
class EngineConfig:
    agent_count: int = 15
    agent_size: float = 60.0
    agent_size_jitter: float = 0.0
    speed: float = 1500.0
    speed_jitter: float = 0.0
    wander_speed: float = 300.0
    arrive_radius: float = 10.0
    wander_refresh: float = 0.5
    max_acceleration: float = 6000.0
    repel_distance: float = 80.0
    repel_force: float = 60000.0
    link_distance: float = 200.0
    assignment_policy: AssignmentPolicy = AssignmentPolicy.ONE_TO_ONE
    modality_priority: List[str] = field(default_factory=lambda: ["hands", "pose", "objects", "color"])
    modalities: List[ModalityConfig] = field(default_factory=_default_modalities)
    max_agents_per_target: Optional[int] = 15
    boundary_mode: BoundaryMode = BoundaryMode.CLAMP
    pursuit_mode: PursuitMode = PursuitMode.BOUNDED_STEP
    max_dt: float = 0.05
    assignment_interval: float = 0.2
    hide_idle: bool = False
    sort_targets_by_id: bool = False
    canvas_width: float = 1280.0
    canvas_height: float = 720.0
    seed: int = 42
    config_version: str = "v1"

    def __post_init__(self) -> None:
        self.assignment_policy = AssignmentPolicy(self.assignment_policy)
        self.boundary_mode = BoundaryMode(self.boundary_mode)
        self.pursuit_mode = PursuitMode(self.pursuit_mode)
        self.modality_priority = [str(name) for name in self.modality_priority]
        self.validate()

    def validate(self) -> None:
        if self.agent_count < 0:
            raise ValueError(f"agent_count must be >= 0, got {self.agent_count}")
        for name in ("agent_size", "speed", "max_dt", "canvas_width", "canvas_height"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0.0:
                raise ValueError(f"{name} must be a positive finite number, got {value!r}")
        for name in (
            "agent_size_jitter",
            "speed_jitter",
            "wander_speed",
            "arrive_radius",
            "wander_refresh",
            "max_acceleration",
            "repel_distance",
            "repel_force",
            "link_distance",
            "assignment_interval",
        ):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0.0:
                raise ValueError(f"{name} must be a non-negative finite number, got {value!r}")
        if self.speed_jitter > 1.0:
            raise ValueError(f"speed_jitter must be within [0, 1], got {self.speed_jitter}")
        if self.agent_size_jitter >= 1.0:
            raise ValueError(f"agent_size_jitter must be within [0, 1), got {self.agent_size_jitter}")
        if self.max_agents_per_target is not None and self.max_agents_per_target < 1:
            raise ValueError(f"max_agents_per_target must be >= 1 or null, got {self.max_agents_per_target}")
        if self.agent_size * (1.0 + self.agent_size_jitter) > min(self.canvas_width, self.canvas_height):
            raise ValueError("agent_size does not fit inside the canvas")
        known = {modality.name for modality in self.modalities}
        unknown = [name for name in self.modality_priority if name not in known]
        if unknown:
            raise ValueError(f"modality_priority names unknown modalities: {unknown}")

    def modality(self, name: str) -> ModalityConfig:
        for modality in self.modalities:
            if modality.name == name:
                return modality
        raise KeyError(name)

    def policy_for(self, modality: str | None) -> AssignmentPolicy:
        if modality is not None:
            override = self.modality(modality).policy
            if override is not None:
                return override
        return self.assignment_policy

    @staticmethod
    def from_yaml(path: Path) -> "EngineConfig":
        data = yaml.safe_load(Path(path).read_text()) or {}
        return load_config(data)


# Option names used by the browser overlay variants.
_ALIASES = {
    "agentCount": "agent_count",
    "agentSize": "agent_size",
    "repelDistance": "repel_distance",
    "repelForce": "repel_force",
    "linkDistance": "link_distance",
    "assignmentPolicy": "assignment_policy",
    "modalityPriority": "modality_priority",
    "maxAgentsPerTarget": "max_agents_per_target",
    "boundaryMode": "boundary_mode",
    "maxDt": "max_dt",
}


def _load_modality(raw: Any) -> ModalityConfig:
    if isinstance(raw, str):
        return ModalityConfig(name=raw)
    if not isinstance(raw, dict) or "name" not in raw:
        raise ValueError(f"modality entries need a name, got {raw!r}")
    values = dict(raw)
    if values.get("landmark_indices") is not None:
        values["landmark_indices"] = [int(index) for index in values["landmark_indices"]]
    try:
        return ModalityConfig(**values)
    except TypeError as exc:
        raise ValueError(f"invalid modality entry {raw!r}: {exc}") from exc


def load_config(raw: dict) -> EngineConfig:
    known = {f.name for f in fields(EngineConfig)}
    values = {}
    for key, value in raw.items():
        name = _ALIASES.get(key, key)
        if name not in known:
            raise ValueError(f"Unknown configuration option: {key}")
        values[name] = value
    if "modalities" in values:
        values["modalities"] = [_load_modality(entry) for entry in values["modalities"]]
    return EngineConfig(**values)
