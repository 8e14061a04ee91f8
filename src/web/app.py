from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from ..target_follower.camera import RealSenseUnavailableError
from ..target_follower.config import ConfigurationError, load_config
from ..target_follower.loop import FollowResult, LoopStatus
from ..target_follower.pipeline import FollowerPipeline

LOG = logging.getLogger(__name__)

app = FastAPI(title="Target Follower UI", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_pipeline: FollowerPipeline | None = None
_pipeline_error: str | None = None


class FollowRequestBody(BaseModel):
    state: str


@app.on_event("startup")
def startup_pipeline() -> None:
    global _pipeline, _pipeline_error

    try:
        config = load_config(os.environ.get("FOLLOWER_CONFIG"))
        policy_env = os.environ.get("FOLLOWER_POLICY")
        if policy_env:
            config.controller.policy = policy_env
        enabled_env = os.environ.get("FOLLOWER_ENABLED")
        if enabled_env is not None:
            config.controller.enabled = enabled_env.lower() in {"1", "true", "yes", "on"}
        config.validate()
    except ConfigurationError as exc:
        LOG.error("Invalid follower configuration: %s", exc)
        _pipeline = None
        _pipeline_error = str(exc)
        return

    try:
        pipeline = FollowerPipeline(config)
    except RealSenseUnavailableError as exc:
        LOG.error("Failed to initialize RealSense pipeline: %s", exc)
        _pipeline = None
        _pipeline_error = str(exc)
        return

    _pipeline = pipeline
    _pipeline_error = None
    pipeline.start()
    LOG.info("Follower pipeline started for web UI (policy=%s)", config.controller.policy)


@app.on_event("shutdown")
def shutdown_pipeline() -> None:
    if _pipeline:
        _pipeline.stop()
        LOG.info("Follower pipeline stopped")


@app.get("/api/health")
def health() -> dict[str, Any]:
    if _pipeline_error:
        return {"status": "error", "message": _pipeline_error}
    if _pipeline is None:
        return {"status": "initializing"}
    pipeline_error = _pipeline.error()
    if pipeline_error:
        return {"status": "error", "message": pipeline_error}
    state = _pipeline.latest_state()
    return {"status": "ok" if state else "warming_up"}


@app.get("/api/status")
def status() -> JSONResponse:
    pipeline = _require_pipeline()

    state = pipeline.latest_state()
    loop_status = pipeline.loop.status()
    if state is None or loop_status is None:
        return JSONResponse({"status": "warming_up"})

    payload = {
        "status": "ok",
        "timestamp": state.timestamp,
        "enabled": loop_status.enabled,
        "robot_state": loop_status.robot_state.value if loop_status.robot_state else None,
        "depth": _serialize_depth(loop_status),
        "target": _serialize_target(loop_status),
        "command": _serialize_command(loop_status),
        "fps": state.fps,
    }
    return JSONResponse(payload)


@app.get("/api/markers")
def markers() -> dict[str, Any]:
    pipeline = _require_pipeline()
    return {"markers": [marker.as_dict() for marker in pipeline.markers()]}


@app.post("/api/follow")
def follow(body: FollowRequestBody) -> JSONResponse:
    pipeline = _require_pipeline()
    result = pipeline.set_following(body.state)
    status_code = 200 if result is FollowResult.OK else 400
    return JSONResponse({"result": result.value}, status_code=status_code)


@app.get("/api/frame")
def frame() -> Response:
    pipeline = _require_pipeline()

    state = pipeline.latest_state()
    if state is None or state.annotated_frame_jpeg is None:
        raise HTTPException(status_code=404, detail="Frame not available yet.")

    headers = {"Cache-Control": "no-store, no-cache, must-revalidate"}
    return Response(content=state.annotated_frame_jpeg, media_type="image/jpeg", headers=headers)


@app.get("/api/frame/stream")
async def frame_stream() -> StreamingResponse:
    pipeline = _require_pipeline()

    async def generator():
        boundary = b"--frame"
        while True:
            state = pipeline.latest_state()
            if state is None or state.annotated_frame_jpeg is None:
                await asyncio.sleep(0.05)
                continue
            payload = (
                boundary
                + b"\r\nContent-Type: image/jpeg\r\nContent-Length: "
                + str(len(state.annotated_frame_jpeg)).encode("ascii")
                + b"\r\n\r\n"
                + state.annotated_frame_jpeg
                + b"\r\n"
            )
            yield payload
            await asyncio.sleep(0.05)

    headers = {"Cache-Control": "no-store, no-cache, must-revalidate"}
    return StreamingResponse(
        generator(),
        media_type="multipart/x-mixed-replace; boundary=frame",
        headers=headers,
    )


def _serialize_depth(status: LoopStatus) -> dict[str, Any]:
    depth = status.snapshot.depth
    return {
        "points": depth.n,
        "centroid": list(depth.centroid) if depth.centroid is not None else None,
        "nearest_m": depth.z if depth.has_points else None,
        "obstacle": status.snapshot.obstacle_detected,
    }


def _serialize_target(status: LoopStatus) -> dict[str, Any] | None:
    target = status.snapshot.target
    if not target.valid:
        return None
    return {"x": target.x, "y": target.y, "source": target.source.value}


def _serialize_command(status: LoopStatus) -> dict[str, Any] | None:
    command = status.command
    if command is None:
        return None
    return {"linear_x": command.linear_x, "angular_z": command.angular_z}


def _mount_static(app: FastAPI) -> None:
    static_dir = Path(__file__).parent / "static"
    app.mount("/", StaticFiles(directory=static_dir, html=True), name="static")


def _require_pipeline() -> FollowerPipeline:
    if _pipeline_error:
        raise HTTPException(status_code=503, detail=_pipeline_error)
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline is not running.")
    pipeline_error = _pipeline.error()
    if pipeline_error:
        raise HTTPException(status_code=503, detail=pipeline_error)
    return _pipeline


_mount_static(app)
