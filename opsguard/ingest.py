# opsguard/ingest.py
from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional, Sequence
import json
import logging

from opsguard.core.fields import as_record, parse_id, parse_text, pick_value
from opsguard.core.events.adapter import FIELD_ALIASES, EventAdapter, compose_note
from opsguard.core.events.aggregator import SignalAggregator
from opsguard.core.events.models import Event, SyncBatch

log = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 520
LOW_SIGNAL_CONFIDENCE_CUTOFF = 0.2

SYNC_MODE_FIELDS = ("sync_mode", "syncMode", "sync.mode", "sync.strategy", "payload.sync_mode",
                    "payload.sync.mode", "meta.sync_mode", "meta.sync.mode", "payload.mode", "mode")
SYNC_FLAG_FIELDS = ("snapshot", "full_sync", "fullSync", "sync.snapshot", "sync.full_sync")
TYPE_FIELDS = ("type", "event_type", "eventType", "kind", "topic", "message_type")
OPERATION_FIELDS = ("op", "operation", "event_op", "event_operation", "sync.op", "sync.operation",
                    "meta.op", "meta.operation")

REPLACE_HINTS = ("replace", "snapshot", "full_sync", "full-sync", "fullsync", "resync")
MERGE_HINTS = ("merge", "upsert", "delta", "incremental", "patch")
DELETE_HINTS = ("deleted", "delete", "removed", "remove", "cleared", "clear")
REMOVE_OPS = frozenset({"delete", "deleted", "remove", "removed", "clear", "cleared", "dismiss", "dismissed"})
UPSERT_OPS = frozenset({"upsert", "create", "created", "insert", "update", "updated", "patch", "add"})

REMOVE_ID_LIST_FIELDS = tuple(
    f"{prefix}{name}"
    for prefix in ("", "payload.", "sync.", "payload.sync.")
    for name in ("deleted_ids", "removed_ids", "delete_ids", "remove_ids", "deleted", "removed")
)
NESTED_RECORD_FIELDS = ("event", "alert", "payload.event", "payload.alert", "payload.data.event",
                        "message.event", "message.alert")
EDGE_OBJECT_FIELDS = ("data.objects", "payload.data.objects", "payload.objects",
                      "message.data.objects", "message.objects")
ARRAY_FIELDS = ("events", "data", "records", "results", "items", "alerts", "payload.events",
                "payload.records", "payload.items", "payload.alerts", "message.events",
                "message.items", "stream.events", "sync.events", "payload.sync.events")
SINGLE_RECORD_FIELDS = ("event", "alert", "payload.event", "payload.alert", "payload.data",
                        "message.event", "message.alert")

# object field -> parent field fallbacks for edge envelopes
EDGE_INHERITED: Dict[str, Sequence[str]] = {
    "timestamp": ("timestamp", "detected_at", "detectedAt", "ts", "time"),
    "deviceId": ("deviceId", "device_id", "cameraId", "camera_id", "camera.id"),
    "eventType": ("eventType", "event_type", "type", "category", "event_name"),
    "severity": ("severity", "priority", "level", "risk", "risk_level"),
    "source": ("source", "provider", "channel", "origin"),
}
EDGE_FRAME_OBJECT = ("frame", "location.frame")
EDGE_FRAME_PARENT = ("frame", "data.frame", "meta.frame")
EDGE_NOTE_FIELDS = ("note", "message", "description", "reason", "summary")


def parse_maybe_json(payload: Any) -> Any:
    """bytes/str are decoded as JSON; an unparsable string stays a string."""
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="ignore")
    if isinstance(payload, str):
        s = payload.strip()
        if not s:
            return None
        try:
            return json.loads(s)
        except ValueError:
            return payload
    return payload


def parse_sync_mode_value(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "replace" if value else "merge"
    text = parse_text(value)
    if text is None:
        return None
    text = text.lower()
    if any(h in text for h in REPLACE_HINTS):
        return "replace"
    if any(h in text for h in MERGE_HINTS):
        return "merge"
    return None


def parse_sync_mode(record: Dict[str, Any]) -> Optional[str]:
    for paths in (SYNC_MODE_FIELDS, SYNC_FLAG_FIELDS, TYPE_FIELDS):
        mode = parse_sync_mode_value(pick_value(record, paths))
        if mode:
            return mode
    return None


def parse_record_operation(record: Dict[str, Any]) -> Optional[str]:
    op = parse_text(pick_value(record, OPERATION_FIELDS))
    if op is None:
        return None
    op = op.lower()
    if op in REMOVE_OPS:
        return "remove"
    if op in UPSERT_OPS:
        return "upsert"
    return None


def parse_event_id(record: Dict[str, Any]) -> Optional[str]:
    return parse_id(pick_value(record, FIELD_ALIASES["id"]))


def parse_id_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    ids: List[str] = []
    for item in value:
        rec = as_record(item)
        rid = parse_event_id(rec) if rec is not None else parse_id(item)
        if rid:
            ids.append(rid)
    return ids


def parse_delete_type_event_id(record: Dict[str, Any]) -> Optional[str]:
    type_text = parse_text(pick_value(record, TYPE_FIELDS))
    if type_text is None or not any(h in type_text.lower() for h in DELETE_HINTS):
        return None
    direct = parse_event_id(record)
    if direct:
        return direct
    nested = as_record(pick_value(record, NESTED_RECORD_FIELDS))
    return parse_event_id(nested) if nested is not None else None


def dedupe_ids(ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(ids))


def collect_remove_ids(record: Dict[str, Any]) -> List[str]:
    ids: List[str] = []
    for path in REMOVE_ID_LIST_FIELDS:
        ids.extend(parse_id_list(pick_value(record, (path,))))
    if parse_record_operation(record) == "remove":
        rid = parse_event_id(record)
        if rid:
            ids.append(rid)
    type_id = parse_delete_type_event_id(record)
    if type_id:
        ids.append(type_id)
    return dedupe_ids(ids)


def normalize_edge_object(parent: Dict[str, Any], value: Any) -> Optional[Dict[str, Any]]:
    """Fill an edge object's missing envelope fields (time, device, type, ...) from its parent."""
    obj = as_record(value)
    if obj is None:
        return None
    merged = dict(obj)
    for key, paths in EDGE_INHERITED.items():
        merged[key] = pick_value(obj, paths)
        if merged[key] is None:
            merged[key] = pick_value(parent, paths)
    frame = pick_value(obj, EDGE_FRAME_OBJECT)
    merged["frame"] = frame if frame is not None else pick_value(parent, EDGE_FRAME_PARENT)

    store_id = pick_value(obj, FIELD_ALIASES["store_id"])
    if store_id is None:
        store_id = pick_value(parent, FIELD_ALIASES["store_id"])
    if store_id is not None:
        merged["store_id"] = store_id

    vlm = as_record(obj.get("vlm_analysis")) or {}
    note = parse_text(pick_value(obj, EDGE_NOTE_FIELDS)) or compose_note(
        parse_text(vlm.get("summary")), parse_text(vlm.get("cause")), parse_text(vlm.get("action")))
    if note:
        merged["note"] = note
        # the adapter would otherwise fold cause/action in a second time
        merged.pop("vlm_analysis", None)
    return merged


def drop_low_signal_events(events: Iterable[Event]) -> List[Event]:
    return [e for e in events
            if not (e.type == "unknown" and e.severity == 1 and e.confidence < LOW_SIGNAL_CONFIDENCE_CUTOFF)]


class FeedNormalizer:
    """
    One inbound payload -> SyncBatch (mode, upserts, removals, signal patch).

    Accepts bytes, str, a list of records or an envelope dict. Nothing raises: an
    unparsable payload yields an empty merge batch.
    """

    def __init__(self, adapter: EventAdapter, signals: SignalAggregator,
                 max_events: int = DEFAULT_MAX_EVENTS, fallback_store_id: str = "s001",
                 default_source: str = "api"):
        self.adapter = adapter
        self.signals = signals
        self.max_events = int(max_events)
        self.fallback_store_id = fallback_store_id
        self.default_source = default_source

    # ------------- internals -------------

    def _records_for_sync(self, rows: List[Any]):
        candidates: List[Any] = []
        remove_ids: List[str] = []
        for row in rows:
            rec = as_record(row)
            if rec is not None and parse_record_operation(rec) == "remove":
                rid = parse_event_id(rec)
                if rid:
                    remove_ids.append(rid)
                continue
            candidates.append(row)

        upsert: List[Event] = []
        if candidates:
            upsert = drop_low_signal_events(self.adapter.normalize_feed(
                candidates, self.max_events, self.fallback_store_id, self.default_source))
        return upsert, dedupe_ids(remove_ids)

    def _batch(self, mode: str, upsert: List[Event], remove_ids: List[str], signal) -> SyncBatch:
        return SyncBatch(mode=mode, upsert=upsert, remove_ids=remove_ids,
                         signal_patch=signal.patch, signal_labels=list(signal.labels))

    # ------------- public API -------------

    def normalize(self, payload: Any) -> SyncBatch:
        parsed = parse_maybe_json(payload)
        if parsed is None or isinstance(parsed, str):
            if parsed is not None:
                log.debug("[normalize] unparsable payload (%d chars) ignored", len(parsed))
            return SyncBatch()

        signal = self.signals.parse(parsed, self.fallback_store_id, self.default_source)

        if isinstance(parsed, list):
            upsert, removed = self._records_for_sync(parsed)
            return self._batch("merge", upsert, removed, signal)

        row = as_record(parsed)
        if row is None:
            return SyncBatch()
        mode = parse_sync_mode(row) or "merge"
        root_removed = collect_remove_ids(row)

        if row.get("type") in ("ping", "heartbeat"):
            return self._batch(mode, [], root_removed, signal)

        objects = pick_value(row, EDGE_OBJECT_FIELDS)
        if isinstance(objects, list):
            rows = [r for r in (normalize_edge_object(row, o) for o in objects) if r is not None]
            upsert, removed = self._records_for_sync(rows)
            return self._batch(mode, upsert, dedupe_ids(root_removed + removed), signal)

        array = pick_value(row, ARRAY_FIELDS)
        if isinstance(array, list):
            upsert, removed = self._records_for_sync(array)
            return self._batch(mode, upsert, dedupe_ids(root_removed + removed), signal)

        single = pick_value(row, SINGLE_RECORD_FIELDS)
        if single is None:
            single = row
        single_rec = as_record(single)
        if single_rec is not None and parse_record_operation(single_rec) == "remove":
            rid = parse_event_id(single_rec)
            return self._batch(mode, [], dedupe_ids(root_removed + ([rid] if rid else [])), signal)

        evt = self.adapter.adapt(single, self.fallback_store_id, self.default_source)
        return self._batch(mode, drop_low_signal_events([evt]) if evt else [], root_removed, signal)
