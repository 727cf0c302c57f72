from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from pygame.math import Vector2


class TargetKind(str, Enum):
    POINT = "point"
    BOX = "box"


@dataclass(frozen=True, slots=True)
class FrameSize:
    width: float
    height: float


@dataclass(frozen=True, slots=True)
class Target:
    """A normalized detection in canvas coordinates.

    `position` is the representative point: the centre for boxes, the point
    itself otherwise. `extent` is only set for boxes.
    """

    id: str
    kind: TargetKind
    position: Tuple[float, float]
    extent: Optional[Tuple[float, float]] = None
    modality: str = ""
    label: Optional[str] = None
    score: float = 1.0

    @classmethod
    def point(cls, target_id: str, x: float, y: float, **kwargs) -> "Target":
        return cls(id=target_id, kind=TargetKind.POINT, position=(float(x), float(y)), **kwargs)

    @classmethod
    def box(cls, target_id: str, x: float, y: float, width: float, height: float, **kwargs) -> "Target":
        """Build a box target from its top-left corner and extent."""
        return cls(
            id=target_id,
            kind=TargetKind.BOX,
            position=(float(x) + float(width) * 0.5, float(y) + float(height) * 0.5),
            extent=(float(width), float(height)),
            **kwargs,
        )

    @property
    def center(self) -> Vector2:
        return Vector2(self.position)

    @property
    def origin(self) -> Vector2:
        if self.extent is None:
            return Vector2(self.position)
        return Vector2(self.position[0] - self.extent[0] * 0.5, self.position[1] - self.extent[1] * 0.5)

    @property
    def perimeter(self) -> float:
        if self.extent is None:
            return 0.0
        return 2.0 * (self.extent[0] + self.extent[1])


def geometry_id(x: float, y: float, width: float, height: float) -> str:
    # Same object, slightly moved, gets a new id; accepted churn.
    return "-".join(str(int(round(value))) for value in (x, y, width, height))
