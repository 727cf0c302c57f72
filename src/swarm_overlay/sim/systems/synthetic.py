"""Scripted detectors used by the headless runner and the demo server.

They produce raw output in the same shapes the real browser-side models emit
(object boxes, normalized hand landmarks, named pose keypoints, color blobs),
moving along smooth paths parameterized by time so runs are repeatable.
"""

from __future__ import annotations

import asyncio
import math
import random
from abc import ABC, abstractmethod
from time import perf_counter
from typing import Any, Callable, Dict, List, Optional

from ..core.config import ModalityConfig, SourceFormat
from ..core.target import FrameSize

_POSE_NAMES = [
    "nose",
    "left_eye",
    "right_eye",
    "left_ear",
    "right_ear",
    "left_shoulder",
    "right_shoulder",
    "left_elbow",
    "right_elbow",
    "left_wrist",
    "right_wrist",
    "left_hip",
    "right_hip",
    "left_knee",
    "right_knee",
    "left_ankle",
    "right_ankle",
]

# Offsets (in units of body height) from the hip centre.
_POSE_LAYOUT = [
    (0.0, -0.85),
    (-0.03, -0.88),
    (0.03, -0.88),
    (-0.06, -0.86),
    (0.06, -0.86),
    (-0.15, -0.65),
    (0.15, -0.65),
    (-0.22, -0.4),
    (0.22, -0.4),
    (-0.25, -0.15),
    (0.25, -0.15),
    (-0.1, 0.0),
    (0.1, 0.0),
    (-0.1, 0.3),
    (0.1, 0.3),
    (-0.1, 0.55),
    (0.1, 0.55),
]


class SyntheticDetector(ABC):
    def __init__(
        self,
        count: int = 3,
        seed: int = 0,
        time_source: Callable[[], float] = perf_counter,
        dropout: float = 0.0,
        latency: float = 0.0,
        fail_load: bool = False,
    ) -> None:
        self.count = count
        self.dropout = dropout
        self.latency = latency
        self.fail_load = fail_load
        self._time_source = time_source
        self._random = random.Random(seed)
        self._phases = [self._random.uniform(0.0, 2.0 * math.pi) for _ in range(max(0, count))]
        self.calls = 0

    async def load(self) -> None:
        if self.fail_load:
            raise RuntimeError(f"{type(self).__name__}: model weights unavailable")

    async def detect(self, frame: FrameSize) -> Any:
        self.calls += 1
        if self.latency > 0.0:
            await asyncio.sleep(self.latency)
        if self.dropout > 0.0 and self._random.random() < self.dropout:
            return self.empty()
        return self.produce(frame, self._time_source())

    def empty(self) -> Any:
        return []

    @abstractmethod
    def produce(self, frame: FrameSize, t: float) -> Any:
        """Raw detector output for time `t`, in the shape the modality expects."""

    def _orbit(self, index: int, t: float, frame: FrameSize, margin: float) -> tuple[float, float]:
        phase = self._phases[index]
        rate = 0.3 + 0.1 * index
        x = 0.5 + (0.5 - margin) * math.sin(t * rate + phase)
        y = 0.5 + (0.5 - margin) * math.sin(t * rate * 1.3 + phase * 0.7)
        return x * frame.width, y * frame.height


class SyntheticBoxes(SyntheticDetector):
    def __init__(self, *args, native_ids: bool = True, label: str = "person", **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.native_ids = native_ids
        self.label = label

    def produce(self, frame: FrameSize, t: float) -> List[Dict[str, Any]]:
        predictions = []
        for index in range(self.count):
            cx, cy = self._orbit(index, t, frame, 0.25)
            w = frame.width * (0.15 + 0.03 * index)
            h = frame.height * (0.25 + 0.02 * index)
            prediction: Dict[str, Any] = {
                "bbox": [cx - w / 2, cy - h / 2, w, h],
                "class": self.label,
                "score": 0.9,
            }
            if self.native_ids:
                prediction["id"] = f"obj-{index}"
            predictions.append(prediction)
        return predictions


class SyntheticHands(SyntheticDetector):
    def produce(self, frame: FrameSize, t: float) -> List[List[Dict[str, float]]]:
        hands = []
        for index in range(self.count):
            cx, cy = self._orbit(index, t, FrameSize(1.0, 1.0), 0.2)
            spread = 0.08 + 0.02 * math.sin(t * 2.0 + index)
            points = [{"x": cx, "y": cy + 0.06}]
            for landmark in range(1, 21):
                finger = (landmark - 1) // 4
                joint = (landmark - 1) % 4 + 1
                angle = -math.pi / 2 + (finger - 2) * 0.35
                reach = spread * joint / 4.0
                points.append({"x": cx + math.cos(angle) * reach, "y": cy + math.sin(angle) * reach})
            hands.append(points)
        return hands


class SyntheticPose(SyntheticDetector):
    def empty(self) -> Dict[str, Any]:
        return {"keypoints": []}

    def produce(self, frame: FrameSize, t: float) -> Dict[str, Any]:
        if self.count <= 0:
            return self.empty()
        hip_x, hip_y = self._orbit(0, t, frame, 0.35)
        height = frame.height * 0.6
        sway = 0.05 * math.sin(t * 1.7)
        keypoints = []
        for name, (dx, dy) in zip(_POSE_NAMES, _POSE_LAYOUT):
            keypoints.append(
                {
                    "name": name,
                    "x": hip_x + (dx + sway * dy) * height,
                    "y": hip_y + dy * height,
                    "score": 0.8,
                }
            )
        return {"keypoints": keypoints}


class SyntheticColorRegions(SyntheticDetector):
    def produce(self, frame: FrameSize, t: float) -> List[Dict[str, Any]]:
        regions = []
        for index in range(self.count):
            cx, cy = self._orbit(index, t, frame, 0.15)
            if index % 2 == 0:
                size = frame.width * 0.08
                regions.append({"id": f"blob-{index}", "bbox": [cx - size / 2, cy - size / 2, size, size], "label": "red"})
            else:
                regions.append({"id": f"blob-{index}", "centroid": [cx, cy], "label": "blue"})
        return regions


_FACTORIES = {
    SourceFormat.BOX: SyntheticBoxes,
    SourceFormat.LANDMARKS: SyntheticHands,
    SourceFormat.KEYPOINTS: SyntheticPose,
    SourceFormat.COLOR: SyntheticColorRegions,
}


def build_detector(
    modality: ModalityConfig,
    count: int,
    seed: int,
    time_source: Callable[[], float] = perf_counter,
    dropout: float = 0.0,
    latency: float = 0.0,
    fail_load: bool = False,
) -> Optional[SyntheticDetector]:
    if count <= 0:
        return None
    factory = _FACTORIES[modality.source]
    return factory(
        count,
        seed=seed,
        time_source=time_source,
        dropout=dropout,
        latency=latency,
        fail_load=fail_load,
    )
