"""Convert raw detector output into canvas-space `Target` records.

Each source format has its own reader. Readers never raise on bad input: a
batch that is not a list, or an entry that cannot be turned into finite canvas
coordinates, is dropped and counted, so NaN and infinity never reach the
registry.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from ..core.config import ModalityConfig, SourceFormat
from ..core.target import FrameSize, Target, geometry_id
from ..utils.math2d import _is_finite_xy

logger = logging.getLogger(__name__)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(result):
        return None
    return result


def _entries(raw: Any) -> Optional[List[Any]]:
    if isinstance(raw, (list, tuple)):
        return list(raw)
    return None


def _is_finite_target(target: Target) -> bool:
    if not _is_finite_xy(*target.position):
        return False
    return target.extent is None or _is_finite_xy(*target.extent)


def _read_field(entry: Any, name: str) -> Any:
    if isinstance(entry, Mapping):
        return entry.get(name)
    return getattr(entry, name, None)


def _read_xy(entry: Any) -> Optional[tuple[float, float]]:
    if isinstance(entry, (list, tuple)):
        if len(entry) < 2:
            return None
        x, y = _number(entry[0]), _number(entry[1])
    else:
        x, y = _number(_read_field(entry, "x")), _number(_read_field(entry, "y"))
    if x is None or y is None:
        return None
    return x, y


def _read_box(value: Any) -> Optional[tuple[float, float, float, float]]:
    if not isinstance(value, (list, tuple)) or len(value) != 4:
        return None
    numbers = [_number(item) for item in value]
    if any(item is None for item in numbers):
        return None
    x, y, w, h = numbers
    if w < 0.0 or h < 0.0:
        return None
    return x, y, w, h


def _score(entry: Any) -> float:
    score = _number(_read_field(entry, "score"))
    return 1.0 if score is None else score


def _native_id(entry: Any) -> Optional[str]:
    for name in ("id", "track_id", "trackId"):
        value = _read_field(entry, name)
        if value is not None and value != "":
            return str(value)
    return None


class TargetNormalizer:
    """Reads one modality's detector output into canvas coordinates."""

    def __init__(self, modality: ModalityConfig, canvas: FrameSize) -> None:
        self._modality = modality
        self._canvas = canvas
        self.dropped = 0

    @property
    def modality(self) -> ModalityConfig:
        return self._modality

    def set_canvas(self, canvas: FrameSize) -> None:
        self._canvas = canvas

    def normalize(self, raw: Any, frame: Optional[FrameSize] = None) -> List[Target]:
        if raw is None:
            return []
        frame = frame or self._canvas
        if frame.width <= 0 or frame.height <= 0:
            logger.debug("%s: empty frame %sx%s, dropping batch", self._modality.name, frame.width, frame.height)
            return []
        source = self._modality.source
        entries = raw if source == SourceFormat.KEYPOINTS else _entries(raw)
        if entries is None:
            targets, dropped = [], 1
        elif source == SourceFormat.BOX:
            targets, dropped = self._boxes(entries, frame)
        elif source == SourceFormat.LANDMARKS:
            targets, dropped = self._landmarks(entries)
        elif source == SourceFormat.KEYPOINTS:
            targets, dropped = self._keypoints(entries, frame)
        else:
            targets, dropped = self._color_regions(entries, frame)
        # Finite frame values can still overflow once scaled to the canvas.
        finite = [target for target in targets if _is_finite_target(target)]
        dropped += len(targets) - len(finite)
        targets = finite
        if dropped:
            self.dropped += dropped
            logger.debug("%s: dropped %d malformed detections", self._modality.name, dropped)
        return targets

    def _scale(self, frame: FrameSize) -> tuple[float, float]:
        return self._canvas.width / frame.width, self._canvas.height / frame.height

    def _make_box(self, entry: Any, box: tuple[float, float, float, float], frame: FrameSize) -> Target:
        scale_x, scale_y = self._scale(frame)
        x, y, w, h = box
        cx, cy, cw, ch = x * scale_x, y * scale_y, w * scale_x, h * scale_y
        label = _read_field(entry, "class") or _read_field(entry, "label")
        return Target.box(
            _native_id(entry) or geometry_id(x, y, w, h),
            cx,
            cy,
            cw,
            ch,
            modality=self._modality.name,
            label=None if label is None else str(label),
            score=_score(entry),
        )

    def _boxes(self, raw: Iterable[Any], frame: FrameSize) -> tuple[List[Target], int]:
        targets: List[Target] = []
        dropped = 0
        for entry in raw:
            box = _read_box(_read_field(entry, "bbox"))
            if box is None:
                dropped += 1
                continue
            if _score(entry) < self._modality.min_score:
                continue
            targets.append(self._make_box(entry, box, frame))
        return targets, dropped

    def _landmarks(self, raw: Iterable[Sequence[Any]]) -> tuple[List[Target], int]:
        # Landmarks arrive normalized to 0..1, so they scale by canvas size directly.
        targets: List[Target] = []
        dropped = 0
        indices = self._modality.landmark_indices
        for hand_index, hand in enumerate(raw):
            if not isinstance(hand, (list, tuple)):
                dropped += 1
                continue
            selected = range(len(hand)) if indices is None else indices
            for index in selected:
                if index >= len(hand):
                    dropped += 1
                    continue
                xy = _read_xy(hand[index])
                if xy is None:
                    dropped += 1
                    continue
                targets.append(
                    Target.point(
                        f"{self._modality.name}:{hand_index}:{index}",
                        xy[0] * self._canvas.width,
                        xy[1] * self._canvas.height,
                        modality=self._modality.name,
                    )
                )
        return targets, dropped

    def _keypoints(self, raw: Any, frame: FrameSize) -> tuple[List[Target], int]:
        if isinstance(raw, Mapping):
            normalized = bool(raw.get("normalized", False))
            entries = raw.get("keypoints") or []
        else:
            normalized = False
            entries = raw
        entries = _entries(entries)
        if entries is None:
            return [], 1
        scale_x, scale_y = (self._canvas.width, self._canvas.height) if normalized else self._scale(frame)
        targets: List[Target] = []
        dropped = 0
        for index, entry in enumerate(entries):
            xy = _read_xy(entry)
            if xy is None:
                dropped += 1
                continue
            score = _score(entry)
            if score < self._modality.min_score:
                continue
            name = _read_field(entry, "name")
            targets.append(
                Target.point(
                    f"{self._modality.name}:{name if name else index}",
                    xy[0] * scale_x,
                    xy[1] * scale_y,
                    modality=self._modality.name,
                    label=None if name is None else str(name),
                    score=score,
                )
            )
        return targets, dropped

    def _color_regions(self, raw: Iterable[Any], frame: FrameSize) -> tuple[List[Target], int]:
        scale_x, scale_y = self._scale(frame)
        targets: List[Target] = []
        dropped = 0
        for index, entry in enumerate(raw):
            box = _read_box(_read_field(entry, "bbox"))
            if box is not None:
                targets.append(self._make_box(entry, box, frame))
                continue
            xy = _read_xy(_read_field(entry, "centroid") or ())
            if xy is None:
                dropped += 1
                continue
            label = _read_field(entry, "label")
            targets.append(
                Target.point(
                    _native_id(entry) or f"{self._modality.name}:{index}",
                    xy[0] * scale_x,
                    xy[1] * scale_y,
                    modality=self._modality.name,
                    label=None if label is None else str(label),
                    score=_score(entry),
                )
            )
        return targets, dropped
