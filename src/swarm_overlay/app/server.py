from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from time import perf_counter
from typing import Any, Dict, List, Set

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from ..sim.core.config import EngineConfig
from ..sim.core.engine import SwarmEngine
from ..sim.core.target import FrameSize
from ..sim.systems.detection import DetectorChannel
from ..sim.systems.synthetic import build_detector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueuedSnapshot:
    tick: int
    payload: str


class OverlayController:
    """Runs the render loop and streams agent state to connected renderers."""

    def __init__(self, config: EngineConfig, frame_interval: float = 1.0 / 60.0, broadcast_interval: int = 1):
        self.config = config
        self.engine = SwarmEngine(config)
        self.frame_interval = frame_interval
        self.broadcast_interval = max(1, broadcast_interval)
        self.running = False
        self.clients: Set[WebSocket] = set()
        self.channels: List[DetectorChannel] = []
        self._client_last_sent: Dict[WebSocket, int] = {}
        self._snapshot_queue: deque[QueuedSnapshot] = deque(maxlen=256)
        self._queue_lock = asyncio.Lock()
        self._loop_task: asyncio.Task | None = None
        self._channel_tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._loop())
        self.running = True

    async def stop(self) -> None:
        self.running = False

    async def shutdown(self) -> None:
        self.running = False
        for channel in self.channels:
            channel.stop()
        tasks = self._channel_tasks + ([self._loop_task] if self._loop_task is not None else [])
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._channel_tasks.clear()
        self._loop_task = None

    def attach_synthetic_detectors(self, counts: Dict[str, int]) -> None:
        for index, modality in enumerate(self.config.modalities):
            detector = build_detector(modality, counts.get(modality.name, 0), seed=self.config.seed + index)
            if detector is None:
                continue
            channel = DetectorChannel(
                modality,
                detector,
                self.engine.normalizer(modality.name),
                self.engine.mailbox,
                frame_source=lambda: self.engine.canvas,
            )
            self.channels.append(channel)
            self._channel_tasks.append(asyncio.create_task(channel.run()))

    async def reset(self) -> None:
        self.engine.reset()
        async with self._queue_lock:
            self._snapshot_queue.clear()
        for client in self._client_last_sent:
            self._client_last_sent[client] = -1
        await self._broadcast_snapshot()

    async def _loop(self) -> None:
        while True:
            started = perf_counter()
            if self.running:
                metrics = self.engine.frame(started)
                if metrics.tick % self.broadcast_interval == 0:
                    await self._broadcast_snapshot()
            await asyncio.sleep(max(0.0, self.frame_interval - (perf_counter() - started)))

    async def acknowledge(self, tick: int) -> None:
        async with self._queue_lock:
            while self._snapshot_queue and self._snapshot_queue[0].tick <= tick:
                self._snapshot_queue.popleft()

    def _serialize_snapshot(self) -> QueuedSnapshot:
        snapshot = self.engine.snapshot()
        payload = {
            "type": "snapshot",
            "tick": snapshot.tick,
            "payload": {
                "tick": snapshot.tick,
                "metrics": asdict(snapshot.metrics),
                "agents": snapshot.agents,
                "targets": snapshot.targets,
                "canvas": asdict(snapshot.canvas),
                "metadata": asdict(snapshot.metadata),
            },
        }
        return QueuedSnapshot(tick=snapshot.tick, payload=json.dumps(payload))

    async def _send_pending_snapshots(self, client: WebSocket) -> None:
        last_sent = self._client_last_sent.get(client, -1)
        async with self._queue_lock:
            pending = [item for item in self._snapshot_queue if item.tick > last_sent]
        for item in pending:
            await client.send_text(item.payload)
            last_sent = item.tick
        self._client_last_sent[client] = last_sent

    async def _broadcast_snapshot(self) -> None:
        queued = self._serialize_snapshot()
        async with self._queue_lock:
            self._snapshot_queue.append(queued)
        stale: Set[WebSocket] = set()
        for client in self.clients:
            try:
                await self._send_pending_snapshots(client)
            except WebSocketDisconnect:
                stale.add(client)
        for client in stale:
            self.clients.discard(client)
            self._client_last_sent.pop(client, None)


def _load_app_config() -> EngineConfig:
    path = os.environ.get("SWARM_OVERLAY_CONFIG")
    if path:
        return EngineConfig.from_yaml(Path(path))
    return EngineConfig()


def _parse_demo_counts(value: str) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for item in filter(None, (part.strip() for part in value.split(","))):
        name, _, count = item.partition("=")
        counts[name] = int(count or 1)
    return counts


controller = OverlayController(_load_app_config())


@asynccontextmanager
async def lifespan(_app: FastAPI):
    await controller.start()
    demo = os.environ.get("SWARM_OVERLAY_DEMO")
    if demo:
        controller.attach_synthetic_detectors(_parse_demo_counts(demo))
    yield
    await controller.shutdown()


app = FastAPI(title="Swarm Overlay Engine", lifespan=lifespan)


@app.get("/api/status")
async def status() -> JSONResponse:
    snapshot = controller.engine.snapshot()
    return JSONResponse(
        {
            "running": controller.running,
            "tick": snapshot.tick,
            "agents": len(controller.engine.agents),
            "active_modality": controller.engine.active_modality,
            "metrics": asdict(snapshot.metrics),
            "channels": {channel.name: channel.state.value for channel in controller.channels},
        }
    )


@app.get("/api/config")
async def get_config() -> JSONResponse:
    return JSONResponse(json.loads(json.dumps(asdict(controller.config), default=str)))


@app.post("/api/control/start")
async def start_engine() -> JSONResponse:
    controller.running = True
    return JSONResponse({"running": True})


@app.post("/api/control/stop")
async def stop_engine() -> JSONResponse:
    controller.running = False
    return JSONResponse({"running": False})


@app.post("/api/control/reset")
async def reset_engine() -> JSONResponse:
    await controller.reset()
    return JSONResponse({"running": controller.running, "tick": controller.engine.tick})


@app.post("/api/canvas")
async def resize_canvas(payload: dict) -> JSONResponse:
    try:
        width = float(payload["width"])
        height = float(payload["height"])
        controller.engine.resize(width, height)
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"invalid canvas size: {exc}") from exc
    return JSONResponse({"width": width, "height": height})


@app.post("/api/targets/{modality}")
async def push_targets(modality: str, payload: dict) -> JSONResponse:
    """Detector ingress: raw detections in the modality's source format."""
    frame = controller.engine.canvas
    raw_frame: Any = payload.get("frame")
    if raw_frame is not None:
        try:
            frame = FrameSize(float(raw_frame["width"]), float(raw_frame["height"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"invalid frame size: {exc}") from exc
    try:
        accepted = controller.engine.push_raw(modality, payload.get("detections"), frame)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"unknown modality: {modality}") from exc
    return JSONResponse({"modality": modality, "accepted": accepted})


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    await websocket.accept()
    controller.clients.add(websocket)
    controller._client_last_sent[websocket] = -1
    await controller._send_pending_snapshots(websocket)
    try:
        while True:
            message = await websocket.receive_text()
            try:
                payload = json.loads(message)
            except json.JSONDecodeError:
                continue
            if payload.get("type") == "ack":
                tick = payload.get("tick")
                if isinstance(tick, int):
                    await controller.acknowledge(tick)
    except WebSocketDisconnect:
        controller.clients.discard(websocket)
        controller._client_last_sent.pop(websocket, None)


__all__ = ["app", "controller"]
