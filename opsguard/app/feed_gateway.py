# opsguard/app/feed_gateway.py

from __future__ import annotations
import json, logging, uuid
from typing import Optional, Set

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from opsguard.config import load_config
from opsguard.core.events.incidents import IncidentTransitionError
from opsguard.demo import DemoProducer
from opsguard.logging_utils import setup_logging
from opsguard.pipeline.manager import FeedManager

log = logging.getLogger(__name__)

INCIDENT_ACTIONS = {"ack": "acknowledge", "resolve": "resolve", "dispatch": "dispatch"}


def create_app(manager: Optional[FeedManager] = None) -> FastAPI:
    manager = manager or FeedManager(load_config())
    demo = DemoProducer(manager.adapter.resolver)
    app = FastAPI(title="OpsGuard Feed Gateway", version="1.0")
    app.state.manager = manager
    clients: Set[WebSocket] = set()

    @app.middleware("http")
    async def request_headers(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        response.headers["cache-control"] = "no-store"
        return response

    async def _send(ws: WebSocket, payload: dict) -> bool:
        try:
            await ws.send_text(json.dumps(payload, ensure_ascii=False))
            return True
        except (RuntimeError, WebSocketDisconnect) as e:
            log.info("Dropping websocket client: %s", e)
            return False

    async def _broadcast(payload: dict) -> None:
        dead = [ws for ws in list(clients) if not await _send(ws, payload)]
        for d in dead:
            clients.discard(d)

    def _snapshot(limit: Optional[int] = None) -> dict:
        items = [e.to_dict() for e in manager.events(limit)]
        return {"type": "snapshot", "count": len(items), "items": items}

    @app.get("/health")
    async def health():
        return {"status": "ok", "events": len(manager.events())}

    @app.post("/feed/ingest")
    async def ingest(req: Request):
        summary = manager.ingest(await req.body())
        await _broadcast({"type": "sync", "summary": summary})
        await _broadcast(_snapshot())
        return {"status": "ok", **summary}

    @app.get("/events/snapshot")
    async def snapshot(limit: Optional[int] = Query(default=None, ge=1, le=1000)):
        return _snapshot(limit)

    @app.get("/signals")
    async def signals():
        return manager.signals().to_dict()

    @app.get("/sla")
    async def sla():
        return {"items": [row.to_dict() for row in manager.sla()]}

    @app.get("/zone-map")
    async def zone_map():
        return manager.adapter.resolver.zone_map.doc

    @app.get("/mock/events")
    async def mock_events(request: Request, shape: str = "a",
                          count: int = Query(default=4, ge=1, le=20)):
        try:
            return demo.build_payload(shape, count, request_id=request.state.request_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid shape parameter. Use a, b, single, or edge.")

    @app.post("/events/{event_id}/{action}")
    async def incident_action(event_id: str, action: str):
        method = INCIDENT_ACTIONS.get(action)
        if method is None:
            raise HTTPException(status_code=404, detail=f"unknown action {action!r}")
        try:
            evt, entry = getattr(manager, method)(event_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"event {event_id!r} not found")
        except IncidentTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        await _broadcast(_snapshot())
        return {"event": evt.to_dict(), "timeline_entry": entry.to_dict() if entry else None}

    @app.websocket("/ws/events")
    async def ws_events(ws: WebSocket):
        await ws.accept()
        clients.add(ws)
        try:
            await _send(ws, _snapshot())
            while True:
                await ws.receive_text()  # keepalive / ignore client messages
        except WebSocketDisconnect:
            clients.discard(ws)

    return app


def serve() -> None:
    import uvicorn

    cfg = load_config()
    log_cfg = cfg.get("logging", {}) or {}
    setup_logging(log_cfg.get("level", "INFO"), log_cfg.get("file"))
    gw = cfg.get("gateway", {}) or {}
    uvicorn.run(create_app(FeedManager(cfg)), host=gw.get("host", "0.0.0.0"), port=int(gw.get("port", 8080)))


if __name__ == "__main__":
    serve()
