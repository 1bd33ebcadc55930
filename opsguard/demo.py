# opsguard/demo.py
"""
Synthetic producers: demo events rendered in every upstream shape the normalizer
understands, plus the pinned photo-reference seed events.
"""
from __future__ import annotations
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import time

import numpy as np

from opsguard.core.events.adapter import EventAdapter
from opsguard.core.events.models import Event
from opsguard.core.roi import ZoneResolver
from opsguard.core.transform import CoordinateTransform

CAMERAS = ("cam-front-01", "cam-mid-02", "cam-cash-03", "cam-back-04")
DEMO_EVENT_TYPES = ("crowd", "fall", "fight", "loitering")
DEMO_MODEL_VERSION = "demo-v0.3"
DEMO_SHAPES = ("a", "b", "single", "edge")

DEFAULT_LIVE_WINDOW_MS = 60 * 60 * 1000
DEFAULT_HISTORY_LOOKBACK_MS = 6 * 60 * 60 * 1000

DEFAULT_DEVICE_ID = "camera-edge-01"
PHOTO_SEED_PREFIX = "photo-log"
PHOTO_SEED_TRACK_IDS = (0, 1, 2, 3, 5, 6)

DEMO_NOTES = {
    "crowd": "People are gathering",
    "fall": "Possible fall detected",
    "fight": "Possible altercation detected",
    "loitering": "Someone has been lingering for a while",
}


def _iso_ms(epoch_ms: int) -> str:
    dt = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _severity_for(event_type: str) -> int:
    if event_type in ("fall", "fight"):
        return 3
    return 2 if event_type == "crowd" else 1


class DemoProducer:
    def __init__(self, resolver: ZoneResolver, rng: Optional[np.random.Generator] = None,
                 store_id: Optional[str] = None):
        self.resolver = resolver
        self.rng = rng if rng is not None else np.random.default_rng()
        self.store_id = store_id or resolver.zone_map.store_id

    def _pick(self, seq):
        return seq[int(self.rng.integers(len(seq)))]

    def _randint(self, lo: int, hi: int) -> int:
        return int(self.rng.integers(lo, hi + 1))

    def generate_event(self, now: Optional[int] = None, live_window_ms: int = DEFAULT_LIVE_WINDOW_MS,
                       history_ratio: float = 0.0, force_history: Optional[bool] = None) -> Event:
        now = int(now if now is not None else time.time() * 1000)
        zone = self._pick(self.resolver.zone_map.zones)
        x, y = self.resolver.sample_point(zone.zone_id, self.rng)

        event_type = self._pick(DEMO_EVENT_TYPES)
        severity = _severity_for(event_type)
        ratio = min(1.0, max(0.0, history_ratio))
        is_history = force_history if force_history is not None else bool(self.rng.random() < ratio)
        if is_history:
            detected_at = now - live_window_ms - self._randint(10_000, DEFAULT_HISTORY_LOOKBACK_MS)
        else:
            detected_at = now - self._randint(0, int(max(10_000, live_window_ms * 0.3)))
        delay = self._randint(180, 1800)
        confidence = min(0.99, max(0.6, 0.72 + severity * 0.08 + (self.rng.random() * 0.08 - 0.04)))
        if is_history:
            status = "resolved" if self.rng.random() < 0.55 else "ack"
        else:
            status = "new"

        return Event(
            id=f"{int(self.rng.integers(1 << 40)):x}-{now:x}",
            store_id=self.store_id,
            detected_at=detected_at,
            ingested_at=detected_at + delay,
            latency_ms=delay,
            type=event_type,
            severity=severity,
            confidence=float(confidence),
            zone_id=zone.zone_id,
            source="demo",
            incident_status=status,
            x=float(x),
            y=float(y),
            camera_id=self._pick(CAMERAS),
            model_version=DEMO_MODEL_VERSION,
            note=DEMO_NOTES[event_type],
        )

    def generate_events(self, count: int, now: Optional[int] = None, newest_first: bool = True,
                        **kwargs) -> List[Event]:
        now = int(now if now is not None else time.time() * 1000)
        events = [self.generate_event(now=now - i * self._randint(1_000, 6_000), **kwargs)
                  for i in range(max(0, count))]
        return sorted(events, key=lambda e: e.detected_at, reverse=newest_first)

    # ------------- upstream shapes -------------

    @staticmethod
    def to_shape_a(evt: Event) -> Dict[str, Any]:
        return {
            "eventId": evt.id,
            "detectedAt": _iso_ms(evt.detected_at),
            "receivedAt": _iso_ms(evt.ingested_at),
            "eventType": evt.type.upper(),
            "priority": {3: "P1", 2: "P2"}.get(evt.severity, "P3"),
            "score": round(evt.confidence * 100, 1),
            "zoneId": evt.zone_id,
            "cameraId": evt.camera_id,
            "status": {"new": "OPEN", "ack": "ACKNOWLEDGED"}.get(evt.incident_status, "CLOSED"),
            "location": {"xNorm": round(evt.x, 4), "yNorm": round(evt.y, 4)},
            "provider": "vision-v2",
            "note": evt.note,
        }

    @staticmethod
    def to_shape_b(evt: Event) -> Dict[str, Any]:
        return {
            "alarm_id": evt.id,
            "timestamp": evt.detected_at // 1000,
            "ingested_at": evt.ingested_at,
            "category": evt.type,
            "level": {3: "high", 2: "medium"}.get(evt.severity, "low"),
            "confidence": round(evt.confidence * 100, 1),
            "zone": {"id": evt.zone_id},
            "position": {"x": round(evt.x * 100, 2), "y": round(evt.y * 100, 2), "unit": "percent"},
            "state": {"new": "OPEN", "ack": "IN_PROGRESS"}.get(evt.incident_status, "DONE"),
            "camera": {"id": evt.camera_id},
            "store": {"id": evt.store_id},
            "message": evt.note,
        }

    @staticmethod
    def to_edge_object(evt: Event, idx: int) -> Dict[str, Any]:
        status = {"fall": "fall_down", "fight": "aggressive", "crowd": "crowding"}.get(evt.type, "walking")
        world_x = evt.world_x_m if evt.world_x_m is not None else evt.x * 9
        world_z = evt.world_z_m if evt.world_z_m is not None else evt.y * 4.8
        return {
            "track_id": int(evt.track_id) if evt.track_id and evt.track_id.isdigit() else idx + 100,
            "label": evt.object_label or "person",
            "status": status,
            "confidence": round(evt.confidence, 2),
            "location": {
                "bbox": [655, 307, 819, 472],
                "frame": {"width": 1280, "height": 720},
                "world": {"x": round(world_x, 2), "z": round(world_z, 2)},
                "zone_id": "Store",
            },
            "vlm_analysis": {
                "summary": evt.note or "Potential safety issue detected.",
                "cause": {"fall": "Faint", "fight": "Conflict"}.get(evt.type, "Unknown"),
                "action": "Call_119" if evt.severity == 3 else "Check_Onsite",
            },
        }

    def build_payload(self, shape: str, count: int = 4, request_id: Optional[str] = None,
                      now: Optional[int] = None) -> Dict[str, Any]:
        shape = (shape or "a").strip().lower()
        if shape not in DEMO_SHAPES:
            raise ValueError(f"invalid shape {shape!r}; use one of {', '.join(DEMO_SHAPES)}")
        now = int(now if now is not None else time.time() * 1000)
        events = self.generate_events(max(1, count), now=now, history_ratio=0.15)
        generated_at = _iso_ms(now)

        if shape == "b":
            return {"type": "alert.batch", "request_id": request_id,
                    "payload": {"items": [self.to_shape_b(e) for e in events]},
                    "generated_at": generated_at}
        if shape == "single":
            return {"type": "alert.created", "request_id": request_id,
                    "payload": {"event": self.to_shape_b(events[0])},
                    "generated_at": generated_at}
        if shape == "edge":
            return {
                "request_id": request_id,
                "deviceId": DEFAULT_DEVICE_ID,
                "timestamp": _iso_ms(events[0].detected_at),
                "eventType": "SAFETY",
                "severity": "Critical" if any(e.severity == 3 for e in events) else "Warning",
                "data": {
                    "count": len(events),
                    "frame": {"width": 1280, "height": 720},
                    "objects": [self.to_edge_object(e, i) for i, e in enumerate(events)],
                },
            }
        return {"meta": {"request_id": request_id, "generated_at": generated_at, "shape": "a"},
                "records": [self.to_shape_a(e) for e in events]}


def build_photo_seed_events(adapter: EventAdapter, transform: CoordinateTransform,
                            now: Optional[int] = None,
                            track_ids=PHOTO_SEED_TRACK_IDS) -> List[Event]:
    """Pinned ``photo-log-<track>`` events placed at each photographed reference point."""
    now = int(now if now is not None else time.time() * 1000)
    enabled = set(track_ids)
    out: List[Event] = []
    for idx, point in enumerate(transform.reference_points):
        if point.track_id not in enabled:
            continue
        x, y = transform.locate_world(point.world_x, point.world_z)
        event_id = f"{PHOTO_SEED_PREFIX}-{point.track_id}"
        record = {
            "eventId": event_id,
            "timestamp": now - idx * 120,
            "camera_id": DEFAULT_DEVICE_ID,
            "track_id": str(point.track_id),
            "label": "person",
            "status": "walking",
            "eventType": "crowd",
            "severity": 2,
            "confidence": 0.97,
            "x_norm": x,
            "y_norm": y,
            "note": f"{point.note} pred({point.pred_x:g},{point.pred_y:g}) "
                    f"-> w({point.world_x:.2f},{point.world_z:.2f})",
        }
        evt = adapter.adapt(record, fallback_store_id="s001", default_source="camera")
        if evt is None:
            continue
        out.append(replace(
            evt,
            source="camera",
            object_label="photo-ref",
            raw_status="photo_ref",
            incident_status="new",
            world_x_m=point.world_x,
            world_z_m=point.world_z,
            note=" | ".join(n for n in (evt.note, f"model-norm({x:.3f},{y:.3f})") if n),
        ))
    return out
