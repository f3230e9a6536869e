"""FastAPI service driving capture sessions and reports.

A client creates a session per stage, polls (or subscribes over WebSocket
to) its progress, submits the self-report once the session is transcribed,
and finally asks for the before/after report.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .capture import open_camera
from .errors import SessionStateError, StorageError
from .features import Stage
from .landmarks import FaceMeshLandmarkSource, LandmarkSource
from .pipeline import ExtractionPipeline
from .report import OpenAIReportBackend, ReportGenerator, comparison_rows
from .session import CameraFactory, CaptureSession, SessionConfig, SessionState
from .store import SessionStore, StoreConfig

logger = logging.getLogger(__name__)


class SessionRequest(BaseModel):
    stage: str = Field(..., pattern=r"^(before|after)$")
    participant_id: str = Field(..., min_length=1, max_length=128)


class SelfReportModel(BaseModel):
    text: str = Field(..., min_length=1, max_length=5000)


class ReportRequest(BaseModel):
    before_id: str
    after_id: Optional[str] = None


def default_store() -> SessionStore:
    return SessionStore(StoreConfig(out_dir=Path(os.environ.get("SOMAMIRROR_DATA_DIR", "data"))))


def default_reporter() -> ReportGenerator:
    models = os.environ.get("SOMAMIRROR_REPORT_MODELS", "gpt-4o-mini,gpt-4o")
    return ReportGenerator(
        [OpenAIReportBackend(model=m.strip()) for m in models.split(",") if m.strip()]
    )


def make_app(
    camera_factory: Optional[CameraFactory] = None,
    landmarks: Optional[LandmarkSource] = None,
    pipeline: Optional[ExtractionPipeline] = None,
    store: Optional[SessionStore] = None,
    reporter: Optional[ReportGenerator] = None,
    session_cfg: Optional[SessionConfig] = None,
    max_sessions: int = 256,
) -> FastAPI:
    app = FastAPI(title="soma-mirror", version="0.1.0")

    camera_factory = camera_factory or open_camera
    if pipeline is None:
        pipeline = ExtractionPipeline(landmarks or FaceMeshLandmarkSource())
    reporter = reporter or default_reporter()
    sessions: dict[str, CaptureSession] = {}
    tasks: dict[str, asyncio.Task] = {}

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - integration
        try:
            await pipeline.landmarks.initialize()
        except Exception:
            # Sessions retry initialization on their first request
            logger.exception("Landmark source initialization failed")

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - integration
        running = list(tasks.values())
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        pipeline.landmarks.close()

    def get_session(session_id: str) -> CaptureSession:
        session = sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="unknown session")
        return session

    def launch(session: CaptureSession) -> None:
        task = asyncio.create_task(session.run())
        tasks[session.id] = task

        def _forget(done: asyncio.Task) -> None:
            if tasks.get(session.id) is done:
                del tasks[session.id]

        task.add_done_callback(_forget)

    def evict() -> None:
        # Oldest first; sessions with a running capture are kept
        for sid in list(sessions):
            if len(sessions) <= max_sessions:
                break
            if sid not in tasks:
                del sessions[sid]

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/sessions")
    async def create_session(req: SessionRequest) -> dict[str, Any]:
        session = CaptureSession(
            stage=req.stage,
            participant_id=req.participant_id,
            camera_factory=camera_factory,
            pipeline=pipeline,
            cfg=session_cfg,
            store=store,
        )
        sessions[session.id] = session
        launch(session)
        evict()
        # Let the run reach its first suspension point (camera acquired or failed)
        await asyncio.sleep(0)
        return session.snapshot()

    @app.get("/sessions/{session_id}")
    async def get_status(session_id: str) -> dict[str, Any]:
        return get_session(session_id).snapshot()

    @app.post("/sessions/{session_id}/retry")
    async def retry(session_id: str) -> dict[str, Any]:
        session = get_session(session_id)
        task = tasks.get(session_id)
        if session.state is not SessionState.IDLE or (task is not None and not task.done()):
            raise HTTPException(status_code=409, detail=f"session is {session.state.value}")
        launch(session)
        await asyncio.sleep(0)
        return session.snapshot()

    @app.post("/sessions/{session_id}/self-report")
    async def self_report(session_id: str, body: SelfReportModel) -> dict[str, Any]:
        session = get_session(session_id)
        try:
            record = session.complete(body.text)
        except SessionStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"record": record.to_dict(), "handle": session.record_handle, "notice": session.notice}

    @app.post("/reports")
    async def create_report(req: ReportRequest) -> dict[str, Any]:
        before = get_session(req.before_id).record
        after = get_session(req.after_id).record if req.after_id else None
        if before is None or (req.after_id and after is None):
            raise HTTPException(status_code=409, detail="sessions must be completed first")
        if before.stage is not Stage.BEFORE:
            raise HTTPException(status_code=422, detail="before_id must name a \"before\" session")
        if after is not None:
            if after.stage is not Stage.AFTER:
                raise HTTPException(status_code=422, detail="after_id must name an \"after\" session")
            if after.participant_id != before.participant_id:
                raise HTTPException(status_code=422, detail="sessions belong to different participants")
        result = await reporter.generate(before, after)
        return {
            "report": result.to_dict(),
            "comparison": comparison_rows(before, after) if after is not None else [],
        }

    @app.get("/participants/{participant_id}/history")
    async def history(participant_id: str) -> list[dict[str, Any]]:
        if store is None:
            return []
        try:
            return [r.to_dict() for r in store.history(participant_id)]
        except StorageError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.websocket("/ws/{session_id}")
    async def ws_status(ws: WebSocket, session_id: str) -> None:  # pragma: no cover - integration
        session = sessions.get(session_id)
        await ws.accept()
        if session is None:
            await ws.close(code=4404)
            return
        try:
            while True:
                task = tasks.get(session_id)
                finished = task is None or task.done()
                await ws.send_json(session.snapshot())
                if finished:
                    break
                await asyncio.sleep(0.2)
            await ws.close()
        except WebSocketDisconnect:
            pass

    return app


def main() -> None:  # pragma: no cover - manual run helper
    import uvicorn

    app = make_app(store=default_store())
    uvicorn.run(app, host="127.0.0.1", port=8000)


if __name__ == "__main__":  # pragma: no cover
    main()
