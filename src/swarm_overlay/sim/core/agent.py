from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pygame.math import Vector2


class AgentState(str, Enum):
    IDLE = "Idle"
    PURSUE = "Pursue"
    HIDDEN = "Hidden"


@dataclass(slots=True)
class Agent:
    id: int
    position: Vector2
    size: Vector2
    speed: float
    velocity: Vector2 = field(default_factory=Vector2)
    state: AgentState = AgentState.IDLE
    bound_target_id: Optional[str] = None
    goal: Optional[Vector2] = None
    visible: bool = True
    wander_goal: Vector2 = field(default_factory=Vector2)
    wander_dir: Vector2 = field(default_factory=Vector2)
    wander_time: float = 0.0
    last_displacement: float = 0.0

    @property
    def center(self) -> Vector2:
        return Vector2(self.position.x + self.size.x * 0.5, self.position.y + self.size.y * 0.5)

    def bind(self, target_id: str, goal: Vector2) -> None:
        self.bound_target_id = target_id
        self.goal = goal
        self.state = AgentState.PURSUE
        self.visible = True

    def release(self, hide: bool = False) -> None:
        self.bound_target_id = None
        self.goal = None
        self.state = AgentState.HIDDEN if hide else AgentState.IDLE
        self.visible = not hide
