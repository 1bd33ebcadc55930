# opsguard/pipeline/manager.py
from __future__ import annotations
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple
import threading
import time
import uuid

from opsguard.config import DEFAULTS
from opsguard.core.events.adapter import EventAdapter, build_default_adapter
from opsguard.core.events.aggregator import SignalAggregator, merge_signal_checks
from opsguard.core.events.incidents import (
    IncidentTimeline, acknowledge, dispatch, parse_timeline, resolve, sla_breaches,
)
from opsguard.core.events.models import Event, IncidentTimelineEntry, SignalChecksState
from opsguard.core.events.sync import apply_incoming_sync_batch, merge_events
from opsguard.demo import DEFAULT_DEVICE_ID, build_photo_seed_events
from opsguard.ingest import FeedNormalizer

import logging
log = logging.getLogger(__name__)

MANUAL_MAP_PREFIX = "manual-map"


class FeedManager:
    """
    Owns the live event list, signal checks and incident timeline, and serializes
    every mutation behind one lock so concurrent transports see a consistent state.
    """

    def __init__(self, cfg: Optional[Dict[str, Any]] = None, adapter: Optional[EventAdapter] = None,
                 clock: Callable[[], float] = time.time):
        self.cfg = cfg or DEFAULTS
        feed_cfg: Dict[str, Any] = self.cfg.get("feed", {}) or {}
        self.clock = clock
        self.adapter = adapter or build_default_adapter(self.cfg, clock=clock)
        self.signals_parser = SignalAggregator(self.adapter, clock=clock)

        self.max_events: int = int(feed_cfg.get("max_events", 520))
        self.fallback_store_id: str = feed_cfg.get("fallback_store_id") or "s001"
        self.normalizer = FeedNormalizer(
            self.adapter, self.signals_parser,
            max_events=self.max_events,
            fallback_store_id=self.fallback_store_id,
            default_source=feed_cfg.get("default_source") or "api",
        )

        self._lock = threading.Lock()
        self._events: List[Event] = []
        self._signals = SignalChecksState()
        self._timeline = IncidentTimeline()

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    # ------------- feed -------------

    def ingest(self, payload: Any) -> Dict[str, Any]:
        t0 = time.perf_counter()
        batch = self.normalizer.normalize(payload)
        t1 = time.perf_counter()
        with self._lock:
            before = len(self._events)
            self._signals = merge_signal_checks(self._signals, batch.signal_patch)
            self._events = apply_incoming_sync_batch(self._events, batch, self.max_events)
            total = len(self._events)
        t2 = time.perf_counter()

        log.info("[ingest] mode=%s upsert=%d remove=%d signals=%s events %d->%d "
                 "(normalize=%.1fms apply=%.1fms)",
                 batch.mode, len(batch.upsert), len(batch.remove_ids), batch.signal_labels,
                 before, total, (t1 - t0) * 1000, (t2 - t1) * 1000)
        return {
            "mode": batch.mode,
            "upserted": len(batch.upsert),
            "removed": len(batch.remove_ids),
            "signals": list(batch.signal_labels),
            "total": total,
        }

    def events(self, limit: Optional[int] = None) -> List[Event]:
        with self._lock:
            out = list(self._events)
        return out[:max(0, int(limit))] if limit is not None else out

    def get_event(self, event_id: str) -> Optional[Event]:
        with self._lock:
            return next((e for e in self._events if e.id == event_id), None)

    def signals(self) -> SignalChecksState:
        with self._lock:
            return self._signals

    def timeline(self, event_id: Optional[str] = None) -> List[IncidentTimelineEntry]:
        with self._lock:
            return self._timeline.for_event(event_id) if event_id else self._timeline.entries()

    def sla(self, now: Optional[int] = None):
        with self._lock:
            events, timeline = list(self._events), self._timeline
            return sla_breaches(events, timeline, now if now is not None else self._now_ms())

    # ------------- incident actions -------------

    def _transition(self, event_id: str, fn, actor: str) -> Tuple[Event, Optional[IncidentTimelineEntry]]:
        with self._lock:
            idx = next((i for i, e in enumerate(self._events) if e.id == event_id), None)
            if idx is None:
                raise KeyError(event_id)
            updated, entry = fn(self._events[idx], actor=actor, at=self._now_ms())
            self._events[idx] = updated
            if entry is not None:
                self._timeline.append(entry)
        if entry is not None:
            log.info("[incident] %s %s: %s -> %s by %s", entry.action, event_id,
                     entry.from_status, entry.to_status, actor)
        return updated, entry

    def acknowledge(self, event_id: str, actor: str = "operator"):
        return self._transition(event_id, acknowledge, actor)

    def resolve(self, event_id: str, actor: str = "operator"):
        return self._transition(event_id, resolve, actor)

    def dispatch(self, event_id: str, actor: str = "operator"):
        return self._transition(event_id, dispatch, actor)

    # ------------- pinned markers -------------

    def place_manual_marker(self, x: float, y: float, mode: str = "world",
                            camera_id: Optional[str] = None,
                            frame_width: float = 1280, frame_height: float = 720) -> Event:
        """
        Operator-placed marker from world meters (x, z) or a camera pixel (x, y).
        Markers are pinned: replace-mode syncs keep them.
        """
        now = self._now_ms()
        event_id = f"{MANUAL_MAP_PREFIX}-{now:x}-{uuid.uuid4().hex[:6]}"
        record: Dict[str, Any] = {
            "eventId": event_id,
            "timestamp": now,
            "eventType": "unknown",
            "severity": 2,
            "confidence": 0.99,
            "track_id": f"manual-{event_id[-6:]}",
            "label": "manual-target",
            "status": "manual_target",
            "source": "camera",
            "camera_id": (camera_id or "").strip() or DEFAULT_DEVICE_ID,
        }
        if mode == "world":
            record["world"] = {"x": x, "z": y}
            note = f"manual photo world ({x:.2f}, {y:.2f})"
        elif mode == "pixel":
            if frame_width <= 0 or frame_height <= 0:
                raise ValueError("frame size must be positive for pixel markers")
            frame = {"width": frame_width, "height": frame_height}
            record["location"] = {"bbox": [x, y, x, y], "frame": frame}
            note = f"manual pixel ({x:.1f}, {y:.1f})"
        else:
            raise ValueError(f"unknown marker mode {mode!r}")

        evt = self.adapter.adapt(record, fallback_store_id=self.fallback_store_id, default_source="camera")
        if evt is None:
            raise ValueError(f"could not place marker at ({x}, {y}) in {mode} mode")
        evt = replace(
            evt,
            severity=2,
            confidence=max(0.95, evt.confidence),
            raw_status="manual_target",
            world_x_m=x if mode == "world" else evt.world_x_m,
            world_z_m=y if mode == "world" else evt.world_z_m,
            note=note,
        )
        with self._lock:
            self._events = merge_events(self._events, [evt], self.max_events)
        log.info("[marker] placed %s at norm(%.3f, %.3f)", evt.id, evt.x, evt.y)
        return evt

    def seed_reference_events(self, now: Optional[int] = None) -> List[Event]:
        """Replace the live list with photo-reference seeds, keeping manual markers."""
        seeded = build_photo_seed_events(self.adapter, self.adapter.transform,
                                         now if now is not None else self._now_ms())
        with self._lock:
            manual = [e for e in self._events if e.id.startswith(MANUAL_MAP_PREFIX)]
            self._events = merge_events(seeded, manual, self.max_events)
        log.info("[seed] %d reference events seeded, %d manual markers kept", len(seeded), len(manual))
        return seeded

    # ------------- persistence -------------

    def export_state(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "events": [e.to_dict() for e in self._events],
                "signals": self._signals.to_dict(),
                "timeline": self._timeline.to_list(),
            }

    def restore_state(self, state: Dict[str, Any]) -> None:
        """Inverse of export_state; events that no longer validate are dropped."""
        state = state or {}
        events: List[Event] = []
        for row in state.get("events") or []:
            try:
                events.append(Event.from_dict(row))
            except (TypeError, ValueError) as e:
                log.warning("[restore] skipping stored event: %s", e)
        try:
            signals = SignalChecksState.from_dict(state.get("signals") or {})
        except TypeError as e:
            log.warning("[restore] stored signals unreadable, starting fresh: %s", e)
            signals = SignalChecksState()
        with self._lock:
            self._events = merge_events([], events, self.max_events)
            self._signals = signals
            self._timeline = IncidentTimeline(parse_timeline(state.get("timeline")))
