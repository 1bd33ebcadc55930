# opsguard/core/events/adapter.py
"""
RawEventAdapter: one arbitrary upstream record -> one canonical ``Event`` (or None).

Field lookup is table driven. ``FIELD_ALIASES`` lists, per logical field, the dotted
paths tried in order; the first present and non-null value wins. Rejection (no id,
no valid timestamp, no coordinate) is an expected outcome on untrusted input and is
reported as ``None``, never as an exception.
"""
from __future__ import annotations
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import math
import re
import time

from opsguard.core.fields import (
    as_record, parse_epoch_ms, parse_id, parse_number, parse_text, pick_value,
)
from opsguard.core.geometry import clamp01, clamp_range
from opsguard.core.roi import ZoneResolver, load_zone_map
from opsguard.core.transform import CAMERA_FRAME_SIZE, CoordinateTransform
from .models import EVENT_SOURCES, EVENT_TYPES, INCIDENT_STATUSES, Event

log = logging.getLogger(__name__)

FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "id": ("id", "event_id", "eventId", "uuid", "alarm_id", "alarmId", "alert_id", "alertId",
           "payload.id", "payload.event_id", "payload.eventId"),
    "camera_id": ("camera_id", "cameraId", "camera.id", "device_id", "deviceId", "device.id"),
    "track_id": ("track_id", "trackId", "tracking_id", "trackingId", "object_id", "objectId"),
    "detected_at": ("detected_at", "detectedAt", "ts", "timestamp", "created_at", "createdAt", "time"),
    "ingested_at": ("ingested_at", "ingestedAt", "received_at", "receivedAt", "updated_at", "updatedAt"),
    "latency_ms": ("latency_ms", "latencyMs", "latency", "delay_ms"),
    "type": ("type", "event_type", "eventType", "category", "event_name", "label"),
    "type_from_status": ("status", "state", "event_status", "eventState"),
    "severity": ("severity", "priority", "level", "risk", "risk_level", "riskLevel", "status", "state"),
    "confidence": ("confidence", "score", "probability", "confidence_score", "confidenceScore"),
    "incident_status": ("incident_status", "incidentStatus", "status", "state", "resolution", "result.status"),
    "zone_id": ("zone_id", "zoneId", "zone.id", "zone.zone_id", "location.zone_id", "location.zoneId",
                "area_id", "areaId"),
    "store_id": ("store_id", "storeId", "store.id", "site_id", "siteId", "shop_id", "shopId"),
    "source": ("source", "provider", "channel", "origin", "ingest_source"),
    "object_label": ("label", "object.label", "class", "class_name", "object.class", "event_label"),
    "raw_status": ("status", "state", "event_status", "result.status", "payload.status"),
    "model_version": ("model_version", "modelVersion", "model.version"),
    "x": ("x", "x_norm", "xNorm", "position.x", "position.x_norm", "position.xNorm",
          "location.x", "location.x_norm", "location.xNorm", "coord.x", "coordinates.x", "point.x", "geo.x"),
    "y": ("y", "y_norm", "yNorm", "position.y", "position.y_norm", "position.yNorm",
          "location.y", "location.y_norm", "location.yNorm", "coord.y", "coordinates.y", "point.y", "geo.y"),
    "pair": ("position", "location", "coord", "coordinates", "point"),
    "world_x": ("world.x", "worldX", "world_x", "position.world.x", "position_world.x",
                "location.world.x", "location.world_x", "location.x_m", "x_m"),
    "world_z": ("world.z", "worldZ", "world_z", "position.world.z", "position_world.z",
                "location.world.z", "location.world_z", "location.z_m", "z_m"),
    "bbox": ("bbox", "location.bbox", "box", "location.box"),
    "frame": ("frame", "location.frame"),
    "note": ("note", "message", "description", "reason", "summary", "vlm_analysis.summary"),
    "note_cause": ("vlm_analysis.cause", "analysis.cause"),
    "note_action": ("vlm_analysis.action", "analysis.action", "action", "recommended_action"),
}

TYPE_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "fall": ("fall_down", "slip", "slipfall", "trip"),
    "fight": ("violence", "assault", "aggressive", "fight"),
    "crowd": ("queue", "congestion", "crowding", "crowd"),
    "loitering": ("loiter", "idle", "linger", "loitering"),
}

SEVERITY_WORDS: Dict[int, Tuple[str, ...]] = {
    3: ("p1", "l3", "high", "critical", "severe", "urgent"),
    2: ("p2", "l2", "medium", "med", "moderate"),
    1: ("p3", "l1", "low", "minor"),
}

STATUS_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "new": ("open", "opened", "detected", "created", "new_alert"),
    "ack": ("acknowledged", "acknowledge", "in_progress", "processing", "dispatched"),
    "resolved": ("closed", "done", "resolved_done", "complete", "completed"),
}

DEFAULT_SEVERITY_BY_TYPE = {"fall": 3, "fight": 3, "crowd": 2}
DEFAULT_CONFIDENCE_BY_SEVERITY = {3: 0.92, 2: 0.84, 1: 0.78}

MAX_FEED_EVENTS = 1000

Coordinates = Dict[str, Optional[float]]


# ------------- vocabulary normalization -------------

def normalize_type(value: Any) -> str:
    if not isinstance(value, str):
        return "unknown"
    key = value.strip().lower()
    if key in EVENT_TYPES:
        return key
    for canonical, words in TYPE_SYNONYMS.items():
        if key in words:
            return canonical
    return "unknown"


def normalize_severity(value: Any, event_type: str) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not math.isfinite(value)):
        value = None
    if isinstance(value, (int, float)) and value in (1, 2, 3):
        return int(value)

    if isinstance(value, str):
        key = value.strip().lower()
        for level, words in SEVERITY_WORDS.items():
            if key in words:
                return level
        digits = re.sub(r"[^0-9.]", "", key)
        num = parse_number(digits)
        if num is not None and 1 <= num <= 3:
            return int(round(num))

    if isinstance(value, (int, float)):
        if value >= 3:
            return 3
        if value >= 2:
            return 2
        return 1

    return DEFAULT_SEVERITY_BY_TYPE.get(event_type, 1)


def normalize_incident_status(value: Any) -> str:
    if not isinstance(value, str):
        return "new"
    key = value.strip().lower()
    if key in INCIDENT_STATUSES:
        return key
    for canonical, words in STATUS_SYNONYMS.items():
        if key in words:
            return canonical
    return "new"


def normalize_source(value: Any, fallback: str) -> str:
    if not isinstance(value, str):
        return fallback
    key = value.strip().lower()
    if key in EVENT_SOURCES:
        return key
    if "camera" in key:
        return "camera"
    if "demo" in key:
        return "demo"
    if key:
        return "api"
    return fallback


def normalize_confidence(value: Any, severity: int) -> float:
    num = parse_number(value)
    if num is not None:
        if 1 < num <= 100:
            return clamp01(num / 100)
        return clamp01(num)
    return DEFAULT_CONFIDENCE_BY_SEVERITY[severity]


def normalize_coordinate(value: Any) -> Optional[float]:
    """0..1 passes through, 0..100 is read as percent, anything else is unusable."""
    num = parse_number(value)
    if num is None:
        return None
    if 0 <= num <= 1:
        return num
    if 0 <= num <= 100:
        return clamp01(num / 100)
    return None


def compose_note(summary: Optional[str], cause: Optional[str], action: Optional[str]) -> Optional[str]:
    chunks = [summary, f"cause:{cause}" if cause else None, f"action:{action}" if action else None]
    chunks = [c for c in chunks if c]
    return " | ".join(chunks) if chunks else None


class EventAdapter:
    """Pure function of (record, static zone map, calibration, clock)."""

    def __init__(self, transform: CoordinateTransform, resolver: ZoneResolver,
                 clock: Callable[[], float] = time.time):
        self.transform = transform
        self.resolver = resolver
        self.clock = clock

    # ------------- internals -------------

    def _pick(self, record: Dict[str, Any], field: str) -> Any:
        return pick_value(record, FIELD_ALIASES[field])

    def _norm_xy(self, record: Dict[str, Any]) -> Optional[Tuple[float, float]]:
        x = normalize_coordinate(self._pick(record, "x"))
        y = normalize_coordinate(self._pick(record, "y"))
        if x is not None and y is not None:
            return x, y
        pair = self._pick(record, "pair")
        if isinstance(pair, (list, tuple)) and len(pair) >= 2:
            px, py = normalize_coordinate(pair[0]), normalize_coordinate(pair[1])
            if px is not None and py is not None:
                return px, py
        return None

    def _world(self, record: Dict[str, Any]) -> Optional[Coordinates]:
        wx = parse_number(self._pick(record, "world_x"))
        wz = parse_number(self._pick(record, "world_z"))
        if wx is None or wz is None:
            return None
        x, y = self.transform.locate_world(wx, wz)
        return {"x": x, "y": y, "world_x": wx, "world_z": wz}

    def _bbox_center(self, record: Dict[str, Any]) -> Optional[Tuple[float, float]]:
        bbox = self._pick(record, "bbox")
        if not isinstance(bbox, (list, tuple)) or len(bbox) < 4:
            return None
        x1, y1, x2, y2 = (parse_number(v) for v in bbox[:4])
        if x1 is None or y1 is None or x2 is None or y2 is None:
            return None
        frame = as_record(self._pick(record, "frame")) or {}
        fw = parse_number(frame.get("width")) or CAMERA_FRAME_SIZE[0]
        fh = parse_number(frame.get("height")) or CAMERA_FRAME_SIZE[1]
        if fw <= 0 or fh <= 0:
            return None
        return clamp01((x1 + x2) / 2 / fw), clamp01((y1 + y2) / 2 / fh)

    def extract_coordinates(self, record: Dict[str, Any]) -> Optional[Coordinates]:
        """normalized x/y -> [x, y] pair -> world meters -> bbox centre in frame."""
        explicit = self._norm_xy(record)
        if explicit is None:
            world = self._world(record)
            if world is not None:
                return world
            explicit = self._bbox_center(record)
        if explicit is None:
            return None
        wx, wz = self.transform.norm_to_world(*explicit)
        return {"x": explicit[0], "y": explicit[1], "world_x": wx, "world_z": wz}

    def resolve_type(self, record: Dict[str, Any]) -> str:
        primary = normalize_type(self._pick(record, "type"))
        if primary != "unknown":
            return primary
        return normalize_type(self._pick(record, "type_from_status"))

    def extract_note(self, record: Dict[str, Any]) -> Optional[str]:
        return compose_note(parse_text(self._pick(record, "note")),
                            parse_text(self._pick(record, "note_cause")),
                            parse_text(self._pick(record, "note_action")))

    # ------------- public API -------------

    def adapt(self, value: Any, fallback_store_id: Optional[str] = None,
              default_source: str = "unknown") -> Optional[Event]:
        record = as_record(value)
        if record is None:
            return None

        camera_id = parse_id(self._pick(record, "camera_id"))
        track_id = parse_id(self._pick(record, "track_id"))
        event_id = parse_id(self._pick(record, "id"))
        if event_id is None and track_id is not None:
            event_id = f"{camera_id or 'cam-unknown'}:track-{track_id}"
        if event_id is None:
            log.debug("rejected record without id")
            return None

        now_ms = self.clock() * 1000
        detected_at = parse_epoch_ms(self._pick(record, "detected_at"), now_ms)
        if detected_at is None:
            log.debug("rejected %s: missing or out-of-range timestamp", event_id)
            return None
        ingested_at = parse_epoch_ms(self._pick(record, "ingested_at"), now_ms)
        if ingested_at is None:
            ingested_at = detected_at

        latency = parse_number(self._pick(record, "latency_ms"))
        latency_ms = max(0, int(round(latency if latency is not None else ingested_at - detected_at)))

        coords = self.extract_coordinates(record)
        if coords is None:
            log.debug("rejected %s: no resolvable coordinate", event_id)
            return None
        x = clamp_range(coords["x"], 0.0, 1.0)
        y = clamp_range(coords["y"], 0.0, 1.0)

        event_type = self.resolve_type(record)
        severity = normalize_severity(self._pick(record, "severity"), event_type)
        label = self._pick(record, "object_label")
        raw_status = self._pick(record, "raw_status")

        return Event(
            id=event_id,
            store_id=parse_id(self._pick(record, "store_id")) or fallback_store_id or "s001",
            detected_at=detected_at,
            ingested_at=ingested_at,
            latency_ms=latency_ms,
            type=event_type,
            severity=severity,
            confidence=normalize_confidence(self._pick(record, "confidence"), severity),
            zone_id=self.resolver.resolve(x, y, parse_id(self._pick(record, "zone_id"))),
            source=normalize_source(self._pick(record, "source"), default_source),
            incident_status=normalize_incident_status(self._pick(record, "incident_status")),
            x=x,
            y=y,
            camera_id=camera_id,
            track_id=track_id,
            object_label=label if isinstance(label, str) else None,
            raw_status=raw_status if isinstance(raw_status, str) else None,
            model_version=parse_id(self._pick(record, "model_version")),
            world_x_m=coords["world_x"],
            world_z_m=coords["world_z"],
            note=self.extract_note(record),
        )

    def normalize_feed(self, raw: Any, max_events: int, fallback_store_id: Optional[str] = None,
                       default_source: str = "unknown") -> List[Event]:
        """
        Adapt every element, drop rejects, keep the newest record per id and return
        them ordered by (detected_at desc, ingested_at desc, id asc).
        """
        if not isinstance(raw, list):
            return []
        try:
            limit = int(max_events)
        except (TypeError, ValueError, OverflowError):
            limit = 1
        limit = max(1, min(MAX_FEED_EVENTS, limit))

        by_id: Dict[str, Event] = {}
        for item in raw:
            evt = self.adapt(item, fallback_store_id, default_source)
            if evt is None:
                continue
            prev = by_id.get(evt.id)
            if prev is None or (evt.detected_at, evt.ingested_at) > (prev.detected_at, prev.ingested_at):
                by_id[evt.id] = evt

        ordered = sorted(by_id.values(), key=lambda e: (-e.detected_at, -e.ingested_at, e.id))
        return ordered[:limit]


def adapt_raw_event(adapter: EventAdapter, value: Any, fallback_store_id: Optional[str] = None,
                    default_source: str = "unknown") -> Optional[Event]:
    return adapter.adapt(value, fallback_store_id, default_source)


def normalize_event_feed(adapter: EventAdapter, raw: Any, max_events: int,
                         fallback_store_id: Optional[str] = None,
                         default_source: str = "unknown") -> List[Event]:
    return adapter.normalize_feed(raw, max_events, fallback_store_id, default_source)


def build_default_adapter(cfg: Optional[Dict[str, Any]] = None,
                          clock: Callable[[], float] = time.time) -> EventAdapter:
    """Wire the packaged zone map and calibration (or the paths named in ``cfg``)."""
    cfg = cfg or {}
    zm_path = (cfg.get("zone_map") or {}).get("path")
    zm = load_zone_map(Path(zm_path) if zm_path else None)
    transform = CoordinateTransform.from_config(cfg.get("calibration") or {}, world_offset_m=zm.world_offset_m)
    return EventAdapter(transform, ZoneResolver(zm), clock=clock)
