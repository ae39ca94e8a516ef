"""
Live Triage Server
- Ingest transcript segments per call over HTTP
- Push session snapshots to operator dashboards over WebSocket
- Read and hot-update lane timing
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from fastapi import Body, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .adapters.job_matcher import match_jobs
from .config.settings import get_settings
from .core.engine import TriageEngine
from .core.route_synthesizer import synthesize_route
from .exceptions import (
    ConfigurationError,
    InvalidSegmentError,
    SessionNotFoundError,
    TriageError,
)
from .models import CallSessionSnapshot

logger = logging.getLogger(__name__)


class AnalyzeRequest(BaseModel):
    text: str
    whole_text_fallback: bool = False


class MetadataResetRequest(BaseModel):
    fields: List[str] = []


class ConnectionManager:
    """Tracks dashboard WebSocket clients and fans snapshots out to them"""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info(f"👀 Dashboard connected. Total clients: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket) -> None:
        self.active_connections.discard(websocket)
        logger.info(f"👋 Dashboard disconnected. Remaining: {len(self.active_connections)}")

    async def broadcast_snapshot(self, snapshot: CallSessionSnapshot) -> None:
        message = {"type": "snapshot", "data": snapshot.model_dump(mode="json")}
        disconnected = []
        for websocket in list(self.active_connections):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.debug(f"Dropping dashboard client: {e}")
                disconnected.append(websocket)
        for websocket in disconnected:
            self.active_connections.discard(websocket)


ERROR_STATUS = {
    InvalidSegmentError: 422,
    ConfigurationError: 422,
    SessionNotFoundError: 404,
}


def create_app(engine: Optional[TriageEngine] = None) -> FastAPI:
    engine = engine or TriageEngine()
    manager = ConnectionManager()
    engine.subscribe(manager.broadcast_snapshot)

    app = FastAPI(title="Live Call Triage")
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.state.engine = engine
    app.state.connections = manager

    @app.exception_handler(TriageError)
    async def triage_error_handler(request: Request, exc: TriageError):
        status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 409)
        return JSONResponse(
            status_code=status,
            content={"error": type(exc).__name__, "message": exc.message, "call_id": exc.call_id,
                     "details": exc.details},
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        await engine.shutdown()

    @app.get("/health")
    async def health_check():
        return {
            "ok": True,
            "active_calls": len(engine.list_sessions()),
            "tier2": "openai" if engine.segment_classifier.uses_llm else "keywords",
            "timing_version": engine.get_timing_config().version,
            "dashboards": len(manager.active_connections),
        }

    @app.post("/calls/{call_id}/start")
    async def start_call(call_id: str):
        snapshot = await engine.start_session(call_id)
        return snapshot.model_dump(mode="json")

    @app.post("/calls/{call_id}/segments", status_code=202)
    async def submit_segment(call_id: str, payload: Dict[str, Any] = Body(...)):
        await engine.submit_segment(call_id, payload)
        return {"accepted": True, "call_id": call_id}

    @app.post("/calls/{call_id}/end")
    async def end_call(call_id: str):
        snapshot = await engine.end_session(call_id)
        # Unknown calls end quietly with a null body
        return snapshot.model_dump(mode="json") if snapshot else None

    @app.post("/calls/{call_id}/metadata/reset")
    async def reset_metadata(call_id: str, request: Optional[MetadataResetRequest] = None):
        fields = request.fields if request else []
        snapshot = await engine.reset_metadata(call_id, *fields)
        return snapshot.model_dump(mode="json")

    @app.get("/calls/{call_id}")
    async def get_call(call_id: str):
        return engine.get_snapshot(call_id).model_dump(mode="json")

    @app.get("/calls")
    async def list_calls(include_ended: bool = False):
        return {"calls": [s.model_dump(mode="json") for s in engine.list_sessions(include_ended=include_ended)]}

    @app.get("/settings/timing")
    async def get_timing():
        return engine.get_timing_config().model_dump()

    @app.patch("/settings/timing")
    async def update_timing(changes: Dict[str, Any] = Body(...)):
        return engine.set_timing_config(**changes).model_dump()

    @app.post("/triage/analyze")
    async def analyze(request: AnalyzeRequest):
        """Offline Tier 1 run over a pasted transcript"""
        result = match_jobs(request.text, whole_text_fallback=request.whole_text_fallback)
        recommendation = synthesize_route(result.jobs)
        return {
            "jobs": [job.model_dump(mode="json") for job in result.jobs],
            "signals": result.signals,
            "recommendation": recommendation.model_dump(mode="json") if recommendation else None,
        }

    @app.websocket("/ws/calls")
    async def calls_websocket(websocket: WebSocket):
        """WebSocket endpoint for live call snapshots"""
        await manager.connect(websocket)
        try:
            await websocket.send_json({
                "type": "sessions",
                "data": [s.model_dump(mode="json") for s in engine.list_sessions()],
                "timestamp": datetime.now().isoformat(),
            })
            while True:
                # Clients only listen; reading detects the disconnect
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            manager.disconnect(websocket)

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    uvicorn.run(create_app(), host=settings.SERVER_HOST, port=settings.SERVER_PORT, reload=False)


if __name__ == "__main__":
    main()
