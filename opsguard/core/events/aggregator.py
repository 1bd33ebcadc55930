# opsguard/core/events/aggregator.py
from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional
import logging
import time

from opsguard.core.fields import as_record, parse_epoch_ms, parse_number, parse_text
from opsguard.core.transform import CAMERA_FRAME_SIZE
from .adapter import EventAdapter, compose_note
from .models import (
    CrowdSignal, Event, SafetySignal, SignalChecksState, SignalPatch, SignalTone, TrashSignal,
)

log = logging.getLogger(__name__)

DEFAULT_DEVICE_ID = "camera-edge-01"
DEFAULT_ZONE_ID = "Store_Main"
SIGNAL_ENVELOPES = ("crowd", "safety", "cleaning")
WRAPPER_FIELDS = ("event", "alert", "events", "items", "records", "results", "alerts",
                  "data", "payload", "message", "sync")

LABEL_CROWD = "crowd"
LABEL_SAFETY = "safety"
LABEL_TRASH = "trash"


@dataclass
class ParseSignalResult:
    generated_events: List[Event] = field(default_factory=list)
    patch: SignalPatch = field(default_factory=SignalPatch)
    labels: List[str] = field(default_factory=list)

    def add_label(self, label: str) -> None:
        if label not in self.labels:
            self.labels.append(label)


def severity_to_tone(severity: Optional[str]) -> SignalTone:
    s = (severity or "").lower()
    if "critical" in s:
        return "critical"
    if "warn" in s:
        return "watch"
    if "info" in s:
        return "ok"
    return "idle"


def severity_to_level(severity: Optional[str]) -> int:
    s = (severity or "").lower()
    if "critical" in s:
        return 3
    if "warn" in s:
        return 2
    return 1


def congestion_to_tone(level: Optional[str]) -> SignalTone:
    s = (level or "").lower()
    if "high" in s:
        return "critical"
    if "medium" in s:
        return "watch"
    if "low" in s:
        return "ok"
    return "idle"


def _should_replace(current_at: Optional[int], next_at: Optional[int]) -> bool:
    if next_at is None:
        return current_at is None
    if current_at is None:
        return True
    return next_at >= current_at


def _merge_slot(prev, nxt):
    if nxt is None:
        return prev
    return nxt if _should_replace(prev.updated_at, nxt.updated_at) else prev


def merge_signal_checks(prev: SignalChecksState, patch: SignalPatch) -> SignalChecksState:
    """Each slot independently: newest-or-equal patch wins, stale arrivals are ignored."""
    return SignalChecksState(
        crowd=_merge_slot(prev.crowd, patch.crowd),
        safety=_merge_slot(prev.safety, patch.safety),
        trash=_merge_slot(prev.trash, patch.trash),
    )


def _safety_event_type(status: str) -> str:
    s = status.lower()
    if "fall" in s:
        return "fall"
    if "fight" in s or "aggressive" in s:
        return "fight"
    return "unknown"


class SignalAggregator:
    """
    Extracts the crowd / safety / cleaning summaries from edge-device envelopes found
    anywhere in a payload tree, plus one Event per detected object.
    """

    def __init__(self, adapter: EventAdapter, clock: Callable[[], float] = time.time):
        self.adapter = adapter
        self.clock = clock

    # ------------- internals -------------

    def build_object_event(
        self,
        envelope_type: str,
        device_id: str,
        severity_text: Optional[str],
        timestamp_ms: int,
        default_zone_id: str,
        store_id: str,
        source: str,
        obj: Dict[str, Any],
        index: int,
        frame_size=CAMERA_FRAME_SIZE,
    ) -> Optional[Event]:
        track_raw = parse_number(obj.get("track_id"))
        track_id = str(int(track_raw)) if track_raw is not None else str(index)
        status = parse_text(obj.get("status")) or "unknown"
        label = None if envelope_type == "cleaning" else (parse_text(obj.get("label")) or "unknown")
        confidence = parse_number(obj.get("confidence"))

        location = as_record(obj.get("location")) or {}
        world = as_record(location.get("world")) or {}
        world_x = parse_number(world.get("x"))
        world_z = parse_number(world.get("z"))

        event_id = f"{device_id}:{envelope_type}:{track_id}:{timestamp_ms}"
        base: Dict[str, Any] = {
            "eventId": event_id,
            "timestamp": timestamp_ms,
            "camera_id": device_id,
            "track_id": track_id,
            "status": status,
            "eventType": _safety_event_type(status) if envelope_type == "safety" else "unknown",
            "severity": 2 if envelope_type == "cleaning" else severity_to_level(severity_text),
            "confidence": confidence if confidence is not None else 0.75,
            "zone_id": parse_text(location.get("zone_id")) or default_zone_id,
        }
        if label:
            base["label"] = label

        if world_x is not None and world_z is not None:
            base["world"] = {"x": world_x, "z": world_z}
        else:
            bbox = location.get("bbox")
            if not isinstance(bbox, list) or len(bbox) < 4 or frame_size[0] <= 0 or frame_size[1] <= 0:
                return None
            base["bbox"] = bbox[:4]
            base["frame"] = {"width": frame_size[0], "height": frame_size[1]}

        vlm = as_record(obj.get("vlm_analysis")) or {}
        note = compose_note(parse_text(vlm.get("summary")), parse_text(vlm.get("cause")),
                            parse_text(vlm.get("action")))
        if note:
            base["note"] = note

        evt = self.adapter.adapt(base, fallback_store_id=store_id, default_source=source)
        if evt is None:
            return None
        return replace(evt, id=event_id, source=source, object_label=label, raw_status=status)

    def _visit(self, value: Any, result: ParseSignalResult, store_id: str, source: str) -> None:
        if isinstance(value, list):
            for row in value:
                self._visit(row, result, store_id, source)
            return
        row = as_record(value)
        if row is None:
            return

        raw_type = parse_text(row.get("eventType") or row.get("event_type") or row.get("type"))
        if raw_type is None:
            for key in WRAPPER_FIELDS:
                self._visit(row.get(key), result, store_id, source)
            return
        envelope = raw_type.lower()
        if envelope not in SIGNAL_ENVELOPES:
            return

        data = as_record(row.get("data")) or {}
        timestamp_ms = parse_epoch_ms(row.get("timestamp"), self.clock() * 1000)
        if timestamp_ms is None:
            timestamp_ms = int(round(self.clock() * 1000))
        device_id = parse_text(row.get("deviceId") or row.get("device_id") or row.get("camera_id")) \
            or DEFAULT_DEVICE_ID
        severity_text = parse_text(row.get("severity"))
        zone_id = parse_text(data.get("zone_id") or row.get("zone_id")) or DEFAULT_ZONE_ID
        count = max(0, int(round(parse_number(data.get("count")) or 0)))

        if envelope == "crowd":
            level = parse_text(data.get("congestion_level")) or "Unknown"
            result.patch.crowd = CrowdSignal(
                updated_at=timestamp_ms, device_id=device_id, zone_id=zone_id,
                count=count, tone=congestion_to_tone(level), congestion_level=level,
            )
            result.add_label(LABEL_CROWD)
            return

        objects = [o for o in (data.get("objects") or []) if isinstance(o, dict)] \
            if isinstance(data.get("objects"), list) else []
        frame = as_record(data.get("frame")) or as_record(row.get("frame")) or {}
        frame_size = (max(1.0, parse_number(frame.get("width")) or CAMERA_FRAME_SIZE[0]),
                      max(1.0, parse_number(frame.get("height")) or CAMERA_FRAME_SIZE[1]))

        for index, obj in enumerate(objects):
            built = self.build_object_event(
                "safety" if envelope == "safety" else "cleaning",
                device_id, severity_text, timestamp_ms, zone_id, store_id, source,
                obj, index, frame_size,
            )
            if built is not None:
                result.generated_events.append(built)

        statuses = [(parse_text(o.get("status")) or "").lower() for o in objects]
        if envelope == "safety":
            first_vlm = as_record(objects[0].get("vlm_analysis")) if objects else None
            first_vlm = first_vlm or {}
            result.patch.safety = SafetySignal(
                updated_at=timestamp_ms, device_id=device_id, zone_id=zone_id,
                count=count if count > 0 else len(objects),
                tone=severity_to_tone(severity_text),
                severity=severity_text or "-",
                fall_count=sum(1 for s in statuses if "fall" in s),
                summary=parse_text(first_vlm.get("summary")) or "-",
                action=parse_text(first_vlm.get("action")) or "-",
            )
            result.add_label(LABEL_SAFETY)
            return

        trash_count = sum(1 for s in statuses if "trash" in s)
        result.patch.trash = TrashSignal(
            updated_at=timestamp_ms, device_id=device_id, zone_id=zone_id,
            count=count if count > 0 else len(objects),
            tone=severity_to_tone(severity_text or "warning"),
            severity=severity_text or "Warning",
            trash_count=trash_count if trash_count > 0 else len(objects),
        )
        result.add_label(LABEL_TRASH)

    # ------------- public API -------------

    def parse(self, payload: Any, fallback_store_id: str = "s001",
              default_source: str = "api") -> ParseSignalResult:
        result = ParseSignalResult()
        self._visit(payload, result, fallback_store_id, default_source)
        if result.labels:
            log.debug("[parse] signals=%s generated_events=%d", result.labels, len(result.generated_events))
        return result
