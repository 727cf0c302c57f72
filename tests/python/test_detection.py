import asyncio

import pytest

from swarm_overlay.sim.core.config import EngineConfig, ModalityConfig, SourceFormat
from swarm_overlay.sim.core.engine import SwarmEngine
from swarm_overlay.sim.core.target import FrameSize, Target
from swarm_overlay.sim.systems.detection import ChannelState, Detector, DetectorChannel, TargetMailbox
from swarm_overlay.sim.systems.normalizer import TargetNormalizer
from swarm_overlay.sim.systems.synthetic import (
    SyntheticBoxes,
    SyntheticColorRegions,
    SyntheticDetector,
    SyntheticHands,
    SyntheticPose,
    build_detector,
)

CANVAS = FrameSize(640.0, 480.0)


class GatedDetector:
    """Blocks inside detect() until the test opens the gate."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.calls = 0

    async def detect(self, frame):
        self.calls += 1
        await self.gate.wait()
        return [{"bbox": [0, 0, 10, 10], "id": "x"}]


class BrokenDetector:
    async def detect(self, frame):
        raise RuntimeError("inference backend crashed")


def _channel(detector, mailbox=None, poll_interval=0.2, name="objects", source=SourceFormat.BOX):
    modality = ModalityConfig(name, source, poll_interval=poll_interval)
    return DetectorChannel(
        modality,
        detector,
        TargetNormalizer(modality, CANVAS),
        mailbox if mailbox is not None else TargetMailbox(),
        frame_source=lambda: CANVAS,
    )


def test_mailbox_keeps_only_latest_batch_per_modality():
    mailbox = TargetMailbox()
    mailbox.publish("objects", [Target.point("a", 0.0, 0.0)])
    mailbox.publish("hands", [Target.point("h", 0.0, 0.0)])
    mailbox.publish("objects", [Target.point("b", 0.0, 0.0)])

    batches = mailbox.drain()

    assert [batch.modality for batch in batches] == ["hands", "objects"]
    assert [target.id for target in batches[1].targets] == ["b"]
    assert not mailbox.pending()
    assert mailbox.drain() == []


def test_synthetic_detectors_satisfy_detector_protocol():
    assert isinstance(SyntheticBoxes(1), Detector)
    assert isinstance(GatedDetector(), Detector)


def test_only_one_detection_in_flight_per_channel():
    detector = GatedDetector()
    channel = _channel(detector)

    async def exercise():
        await channel.start()
        first = asyncio.create_task(channel.poll_once(0.0))
        await asyncio.sleep(0)
        assert channel.in_flight
        assert not channel.due(10.0)
        assert await channel.poll_once(10.0) is None
        detector.gate.set()
        return await first

    batch = asyncio.run(exercise())

    assert detector.calls == 1
    assert [target.id for target in batch.targets] == ["x"]
    assert not channel.in_flight
    assert channel.polls == 1


def test_poll_respects_interval():
    channel = _channel(SyntheticBoxes(2), poll_interval=0.2)

    async def exercise():
        await channel.start()
        assert channel.due(0.0)
        await channel.poll_once(0.0)
        assert not channel.due(0.1)
        assert channel.due(0.2)

    asyncio.run(exercise())


def test_detector_exception_publishes_empty_batch():
    mailbox = TargetMailbox()
    mailbox.publish("objects", [Target.point("old", 0.0, 0.0)])
    channel = _channel(BrokenDetector(), mailbox)

    async def exercise():
        await channel.start()
        return await channel.poll_once(0.0)

    batch = asyncio.run(exercise())

    assert batch.targets == []
    assert channel.failures == 1
    assert channel.state == ChannelState.READY
    assert mailbox.drain()[0].targets == []


def test_failed_model_load_disables_modality():
    mailbox = TargetMailbox()
    channel = _channel(SyntheticBoxes(3, fail_load=True), mailbox)

    async def exercise():
        state = await channel.start()
        polled = await channel.poll_once(0.0)
        return state, polled

    state, polled = asyncio.run(exercise())

    assert state == ChannelState.FAILED
    assert polled is None
    assert not channel.due(100.0)
    batches = mailbox.drain()
    assert len(batches) == 1
    assert batches[0].targets == []


def test_result_arriving_after_stop_is_dropped():
    detector = GatedDetector()
    mailbox = TargetMailbox()
    channel = _channel(detector, mailbox)

    async def exercise():
        await channel.start()
        pending = asyncio.create_task(channel.poll_once(0.0))
        await asyncio.sleep(0)
        channel.stop()
        detector.gate.set()
        return await pending

    assert asyncio.run(exercise()) is None
    assert channel.state == ChannelState.STOPPED
    assert not mailbox.pending()


def test_run_loop_polls_until_stopped():
    channel = None

    class CountingDetector:
        def __init__(self):
            self.calls = 0

        async def detect(self, frame):
            self.calls += 1
            if self.calls >= 3:
                channel.stop()
            return []

    detector = CountingDetector()
    channel = _channel(detector, poll_interval=0.001)
    asyncio.run(asyncio.wait_for(channel.run(), timeout=5.0))
    assert detector.calls == 3
    assert channel.state == ChannelState.STOPPED


def test_channel_feeds_engine_without_blocking_frames():
    engine = SwarmEngine(EngineConfig(agent_count=5))
    modality = engine.config.modality("objects")
    channel = DetectorChannel(
        modality,
        SyntheticBoxes(3, seed=1, time_source=lambda: 0.0),
        engine.normalizer("objects"),
        engine.mailbox,
        frame_source=lambda: engine.canvas,
    )

    engine.frame(0.0)
    assert engine.active_modality is None

    async def exercise():
        await channel.start()
        await channel.poll_once(0.0)

    asyncio.run(exercise())
    metrics = engine.frame(1.0 / 60.0)

    assert [target.id for target in engine.registry("objects")] == ["obj-0", "obj-1", "obj-2"]
    assert metrics.active_modality == "objects"
    assert metrics.bound == 3


def test_build_detector_matches_source_format():
    config = EngineConfig()
    assert isinstance(build_detector(config.modality("objects"), 2, seed=0), SyntheticBoxes)
    assert isinstance(build_detector(config.modality("hands"), 1, seed=0), SyntheticHands)
    assert isinstance(build_detector(config.modality("pose"), 1, seed=0), SyntheticPose)
    assert isinstance(build_detector(config.modality("color"), 2, seed=0), SyntheticColorRegions)
    assert build_detector(config.modality("objects"), 0, seed=0) is None


@pytest.mark.parametrize(
    ("name", "count", "expected"),
    [
        ("objects", 3, 3),
        ("hands", 2, 10),
        ("pose", 1, 17),
        ("color", 4, 4),
    ],
)
def test_synthetic_output_normalizes_cleanly(name, count, expected):
    config = EngineConfig()
    modality = config.modality(name)
    detector = build_detector(modality, count, seed=5, time_source=lambda: 1.5)
    normalizer = TargetNormalizer(modality, FrameSize(config.canvas_width, config.canvas_height))

    raw = asyncio.run(detector.detect(FrameSize(config.canvas_width, config.canvas_height)))
    targets = normalizer.normalize(raw)

    assert len(targets) == expected
    assert normalizer.dropped == 0
    assert len({target.id for target in targets}) == expected


def test_full_dropout_returns_empty_output():
    detector = SyntheticPose(1, dropout=1.0)
    assert asyncio.run(detector.detect(CANVAS)) == {"keypoints": []}


def test_synthetic_detector_base_is_abstract():
    with pytest.raises(TypeError):
        SyntheticDetector(1)
