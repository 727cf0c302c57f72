"""Asynchronous detector polling.

Each modality gets one `DetectorChannel`. A channel never has more than one
detection in flight: it awaits the detector, normalizes the result and
publishes it into the shared `TargetMailbox`, then sleeps until the next poll
is due. The render loop reads the mailbox without awaiting anything, so a slow
model only makes targets stale, never frames late.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from ..core.config import ModalityConfig
from ..core.target import FrameSize, Target
from .normalizer import TargetNormalizer

logger = logging.getLogger(__name__)


@runtime_checkable
class Detector(Protocol):
    async def detect(self, frame: FrameSize) -> Any:
        ...


@dataclass(frozen=True, slots=True)
class TargetBatch:
    modality: str
    sequence: int
    targets: List[Target] = field(default_factory=list)


class TargetMailbox:
    """Latest normalized batch per modality; publishing overwrites anything unread."""

    def __init__(self) -> None:
        self._pending: Dict[str, TargetBatch] = {}
        self._sequence = 0

    @property
    def sequence(self) -> int:
        return self._sequence

    def publish(self, modality: str, targets: List[Target]) -> TargetBatch:
        self._sequence += 1
        batch = TargetBatch(modality=modality, sequence=self._sequence, targets=list(targets))
        self._pending[modality] = batch
        return batch

    def pending(self) -> bool:
        return bool(self._pending)

    def drain(self) -> List[TargetBatch]:
        batches = sorted(self._pending.values(), key=lambda batch: batch.sequence)
        self._pending.clear()
        return batches

    def clear(self) -> None:
        self._pending.clear()


class ChannelState(str, Enum):
    IDLE = "idle"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


class DetectorChannel:
    def __init__(
        self,
        modality: ModalityConfig,
        detector: Detector,
        normalizer: TargetNormalizer,
        mailbox: TargetMailbox,
        frame_source: Callable[[], FrameSize],
        time_source: Callable[[], float] = perf_counter,
    ) -> None:
        self._modality = modality
        self._detector = detector
        self._normalizer = normalizer
        self._mailbox = mailbox
        self._frame_source = frame_source
        self._time_source = time_source
        self._state = ChannelState.IDLE
        self._in_flight = False
        self._next_due = 0.0
        self.polls = 0
        self.failures = 0

    @property
    def name(self) -> str:
        return self._modality.name

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def start(self) -> ChannelState:
        """Load the detector model if it has one; a failed load empties the modality for good."""
        if self._state != ChannelState.IDLE:
            return self._state
        load = getattr(self._detector, "load", None)
        if load is not None:
            try:
                await load()
            except Exception:
                logger.warning("detector for %s failed to load; modality disabled", self.name, exc_info=True)
                self._state = ChannelState.FAILED
                self._mailbox.publish(self.name, [])
                return self._state
        self._state = ChannelState.READY
        logger.info("detector channel %s ready (poll every %.3fs)", self.name, self._modality.poll_interval)
        return self._state

    def stop(self) -> None:
        if self._state != ChannelState.FAILED:
            self._state = ChannelState.STOPPED

    def due(self, now: Optional[float] = None) -> bool:
        if self._state != ChannelState.READY or self._in_flight:
            return False
        now = self._time_source() if now is None else now
        return now >= self._next_due

    async def poll_once(self, now: Optional[float] = None) -> Optional[TargetBatch]:
        if self._state != ChannelState.READY or self._in_flight:
            return None
        started = self._time_source() if now is None else now
        self._next_due = started + self._modality.poll_interval
        self._in_flight = True
        self.polls += 1
        frame = self._frame_source()
        try:
            raw = await self._detector.detect(frame)
            targets = self._normalizer.normalize(raw, frame)
        except Exception:
            self.failures += 1
            logger.warning("detection failed for %s; publishing empty batch", self.name, exc_info=True)
            targets = []
        finally:
            self._in_flight = False
        if self._state != ChannelState.READY:
            # Stopped while the call was pending; the late result is dropped.
            return None
        return self._mailbox.publish(self.name, targets)

    async def run(self) -> None:
        await self.start()
        while self._state == ChannelState.READY:
            started = self._time_source()
            await self.poll_once(started)
            elapsed = self._time_source() - started
            await asyncio.sleep(max(0.0, self._modality.poll_interval - elapsed))
