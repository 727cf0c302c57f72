from __future__ import annotations

import argparse
import asyncio
import csv
import json
import logging
import math
from pathlib import Path
from typing import Dict, List, Optional

from ..sim.core.config import EngineConfig
from ..sim.core.engine import SwarmEngine
from ..sim.systems.detection import DetectorChannel
from ..sim.systems.synthetic import build_detector
from ..sim.types.metrics import FrameMetrics

logger = logging.getLogger(__name__)


_BASIC_HEADER = [
    "tick",
    "dt",
    "targets",
    "active_modality",
    "bound",
    "visible",
    "assignment_cycles",
    "frame_ms",
]

_DETAILED_HEADER = [
    "tick",
    "dt",
    "targets",
    "active_modality",
    "bound",
    "visible",
    "idle",
    "assignment_cycles",
    "reassigned",
    "frame_ms",
    "repulsion_pairs",
    "mean_displacement",
    "max_displacement",
    "max_step_ratio",
    "bound_ratio",
    "max_agents_per_target",
    "out_of_bounds",
]


class VirtualClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _format_basic_row(metrics: FrameMetrics, frame_ms: float) -> list[object]:
    return [
        metrics.tick,
        f"{metrics.dt:.4f}",
        metrics.targets,
        metrics.active_modality or "",
        metrics.bound,
        metrics.visible,
        metrics.assignment_cycles,
        f"{frame_ms:.3f}",
    ]


def _format_detailed_row(engine: SwarmEngine, metrics: FrameMetrics, frame_ms: float) -> list[object]:
    agents = engine.agents
    population = len(agents)
    step_limit = engine.config.speed * metrics.dt
    max_step_ratio = 0.0 if step_limit <= 0.0 else metrics.max_displacement / step_limit
    bound_ratio = 0.0 if population == 0 else metrics.bound / population
    per_target: Dict[str, int] = {}
    out_of_bounds = 0
    canvas = engine.canvas
    for agent in agents:
        if agent.bound_target_id is not None:
            per_target[agent.bound_target_id] = per_target.get(agent.bound_target_id, 0) + 1
        if (
            agent.position.x < 0.0
            or agent.position.y < 0.0
            or agent.position.x > canvas.width - agent.size.x + 1e-6
            or agent.position.y > canvas.height - agent.size.y + 1e-6
        ):
            out_of_bounds += 1
    return [
        metrics.tick,
        f"{metrics.dt:.4f}",
        metrics.targets,
        metrics.active_modality or "",
        metrics.bound,
        metrics.visible,
        metrics.idle,
        metrics.assignment_cycles,
        int(metrics.reassigned),
        f"{frame_ms:.3f}",
        metrics.repulsion_pairs,
        f"{metrics.mean_displacement:.4f}",
        f"{metrics.max_displacement:.4f}",
        f"{max_step_ratio:.4f}",
        f"{bound_ratio:.4f}",
        max(per_target.values(), default=0),
        out_of_bounds,
    ]


def _percentile(sorted_values: list[float], percentile: float) -> float:
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    pos = (len(sorted_values) - 1) * percentile
    low = int(math.floor(pos))
    high = int(math.ceil(pos))
    if low == high:
        return float(sorted_values[low])
    weight = pos - low
    return float(sorted_values[low] + (sorted_values[high] - sorted_values[low]) * weight)


def _summary_stats(values: list[float]) -> dict[str, float]:
    if not values:
        return {"min": 0.0, "max": 0.0, "avg": 0.0, "p50": 0.0, "p90": 0.0, "p99": 0.0}
    sorted_values = sorted(values)
    return {
        "min": float(sorted_values[0]),
        "max": float(sorted_values[-1]),
        "avg": float(sum(values) / len(values)),
        "p50": _percentile(sorted_values, 0.50),
        "p90": _percentile(sorted_values, 0.90),
        "p99": _percentile(sorted_values, 0.99),
    }


def _build_channels(
    engine: SwarmEngine,
    clock: VirtualClock,
    detector_counts: Dict[str, int],
    dropout: float,
    failing: List[str],
) -> List[DetectorChannel]:
    channels = []
    for index, modality in enumerate(engine.config.modalities):
        detector = build_detector(
            modality,
            detector_counts.get(modality.name, 0),
            seed=engine.config.seed + index,
            time_source=clock,
            dropout=dropout,
            fail_load=modality.name in failing,
        )
        if detector is None:
            continue
        channels.append(
            DetectorChannel(
                modality,
                detector,
                engine.normalizer(modality.name),
                engine.mailbox,
                frame_source=lambda: engine.canvas,
                time_source=clock,
            )
        )
    return channels


async def _drive(
    engine: SwarmEngine,
    clock: VirtualClock,
    channels: List[DetectorChannel],
    steps: int,
    frame_dt: float,
    stall_every: int,
    stall_seconds: float,
    on_frame,
) -> None:
    for channel in channels:
        await channel.start()
    for tick in range(steps):
        for channel in channels:
            if channel.due(clock.now):
                await channel.poll_once(clock.now)
        metrics = engine.frame(clock.now)
        on_frame(metrics)
        clock.advance(frame_dt)
        if stall_every > 0 and tick > 0 and tick % stall_every == 0:
            clock.advance(stall_seconds)


def run_headless(
    steps: int,
    seed: Optional[int],
    log_path: Optional[Path],
    deterministic_log: bool = False,
    log_format: str = "detailed",
    summary_path: Optional[Path] = None,
    summary_window: int = 5000,
    config_path: Optional[Path] = None,
    detector_counts: Optional[Dict[str, int]] = None,
    frame_rate: float = 60.0,
    dropout: float = 0.0,
    failing: Optional[List[str]] = None,
    stall_every: int = 0,
    stall_seconds: float = 0.0,
) -> SwarmEngine:
    config = EngineConfig.from_yaml(config_path) if config_path else EngineConfig()
    if seed is not None:
        config.seed = seed
    if frame_rate <= 0:
        raise ValueError(f"frame_rate must be positive, got {frame_rate}")

    log_mode = log_format.lower().strip()
    if log_mode not in {"basic", "detailed"}:
        raise ValueError(f"Unknown log format: {log_format}")

    engine = SwarmEngine(config)
    clock = VirtualClock()
    counts = detector_counts if detector_counts is not None else {"objects": 3}
    channels = _build_channels(engine, clock, counts, dropout, failing or [])
    logger.info(
        "headless run: %d steps, %d agents, detectors=%s",
        steps,
        config.agent_count,
        ",".join(channel.name for channel in channels) or "none",
    )

    writer = None
    csv_file = None
    if log_path:
        csv_file = Path(log_path).open("w", newline="")
        writer = csv.writer(csv_file)
        writer.writerow(_DETAILED_HEADER if log_mode == "detailed" else _BASIC_HEADER)

    frame_ms_series: list[float] = []
    bound_series: list[float] = []
    displacement_series: list[float] = []
    modality_frames: Dict[str, int] = {}

    def on_frame(metrics: FrameMetrics) -> None:
        frame_ms = 0.0 if deterministic_log else metrics.frame_duration_ms
        if summary_path:
            frame_ms_series.append(frame_ms)
            bound_series.append(float(metrics.bound))
            displacement_series.append(metrics.max_displacement)
            key = metrics.active_modality or "idle"
            modality_frames[key] = modality_frames.get(key, 0) + 1
        if writer:
            if log_mode == "detailed":
                writer.writerow(_format_detailed_row(engine, metrics, frame_ms))
            else:
                writer.writerow(_format_basic_row(metrics, frame_ms))

    try:
        asyncio.run(
            _drive(engine, clock, channels, steps, 1.0 / frame_rate, stall_every, stall_seconds, on_frame)
        )
    finally:
        if csv_file:
            csv_file.close()

    if summary_path:
        window = max(1, int(summary_window))
        tail_slice = slice(max(0, len(frame_ms_series) - window), len(frame_ms_series))
        summary = {
            "steps": steps,
            "seed": config.seed,
            "log_format": log_mode,
            "deterministic_log": deterministic_log,
            "agents": config.agent_count,
            "policy": config.assignment_policy.value,
            "assignment_cycles": engine.assignment_cycles,
            "frame_ms": _summary_stats(frame_ms_series),
            "bound": _summary_stats(bound_series),
            "max_displacement": _summary_stats(displacement_series),
            "active_modality_frames": modality_frames,
            "channels": {
                channel.name: {"state": channel.state.value, "polls": channel.polls, "failures": channel.failures}
                for channel in channels
            },
            "tail_window": {
                "window": window,
                "frame_ms": _summary_stats(frame_ms_series[tail_slice]),
                "bound": _summary_stats(bound_series[tail_slice]),
            },
        }
        Path(summary_path).write_text(json.dumps(summary, indent=2))
    return engine


def _parse_counts(values: List[str]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for value in values:
        name, _, count = value.partition("=")
        if not name or not count:
            raise argparse.ArgumentTypeError(f"expected MODALITY=COUNT, got {value!r}")
        counts[name] = int(count)
    return counts


def main() -> None:
    parser = argparse.ArgumentParser(description="Headless swarm overlay engine run with synthetic detectors")
    parser.add_argument("--steps", type=int, default=3000)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--config", type=Path, default=None, help="YAML engine configuration")
    parser.add_argument("--log", type=Path, default=None, help="CSV file to write per-frame metrics")
    parser.add_argument("--log-format", choices=["basic", "detailed"], default="detailed")
    parser.add_argument("--summary", type=Path, default=None, help="Optional JSON file for run summary stats.")
    parser.add_argument("--summary-window", type=int, default=5000, help="Tail window size (frames) for summary stats.")
    parser.add_argument(
        "--detector",
        action="append",
        default=[],
        metavar="MODALITY=COUNT",
        help="Synthetic detector to run, e.g. objects=3 or hands=1 (repeatable).",
    )
    parser.add_argument("--fail", action="append", default=[], metavar="MODALITY", help="Simulate a model load failure.")
    parser.add_argument("--frame-rate", type=float, default=60.0)
    parser.add_argument("--dropout", type=float, default=0.0, help="Probability that a detection returns nothing.")
    parser.add_argument("--stall-every", type=int, default=0, help="Inject a clock stall every N frames.")
    parser.add_argument("--stall-seconds", type=float, default=5.0)
    parser.add_argument(
        "--deterministic-log",
        action="store_true",
        help="Write deterministic CSV (frame_ms is forced to 0.000 so identical seeds match).",
    )
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    run_headless(
        args.steps,
        args.seed,
        args.log,
        deterministic_log=args.deterministic_log,
        log_format=args.log_format,
        summary_path=args.summary,
        summary_window=args.summary_window,
        config_path=args.config,
        detector_counts=_parse_counts(args.detector) if args.detector else None,
        frame_rate=args.frame_rate,
        dropout=args.dropout,
        failing=args.fail,
        stall_every=args.stall_every,
        stall_seconds=args.stall_seconds,
    )


if __name__ == "__main__":
    main()
