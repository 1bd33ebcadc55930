# opsguard/core/events/incidents.py
"""
Incident status state machine (new -> ack -> resolved, never backwards) and the
operator audit timeline that records every accepted transition.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
import math
import time
import uuid

from .models import INCIDENT_ACTIONS, INCIDENT_STATUSES, Event, IncidentTimelineEntry

log = logging.getLogger(__name__)

TIMELINE_MAX = 240
TIMELINE_DEDUPE_WINDOW_MS = 30_000
ACK_SLA_MS = 2 * 60 * 1000
RESOLVE_SLA_MS = 10 * 60 * 1000
DEFAULT_ACTOR = "operator"

_STATUS_RANK = {s: i for i, s in enumerate(INCIDENT_STATUSES)}

DEFAULT_NOTES = {
    "ack": "Operator started on-site check.",
    "resolved": "Handled and closed.",
    "dispatch": "Field staff dispatched.",
}


class IncidentTransitionError(ValueError):
    """A transition that would move an incident backwards or act on a closed one."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _entry(evt: Event, action: str, actor: str, at: Optional[int], to_status: str,
           note: Optional[str]) -> IncidentTimelineEntry:
    return IncidentTimelineEntry(
        id=uuid.uuid4().hex,
        event_id=evt.id,
        zone_id=evt.zone_id,
        action=action,
        actor=actor,
        at=at if at is not None else _now_ms(),
        from_status=evt.incident_status,
        to_status=to_status,
        note=note if note is not None else DEFAULT_NOTES.get(action),
    )


def _advance(evt: Event, to_status: str, action: str, actor: str, at: Optional[int],
             note: Optional[str]) -> Tuple[Event, Optional[IncidentTimelineEntry]]:
    if evt.incident_status == to_status:
        return evt, None
    if _STATUS_RANK[to_status] < _STATUS_RANK[evt.incident_status]:
        raise IncidentTransitionError(f"{evt.id}: {evt.incident_status} -> {to_status} is not allowed")
    entry = _entry(evt, action, actor, at, to_status, note)
    return replace(evt, incident_status=to_status), entry


def acknowledge(evt: Event, actor: str = DEFAULT_ACTOR, at: Optional[int] = None,
                note: Optional[str] = None) -> Tuple[Event, Optional[IncidentTimelineEntry]]:
    return _advance(evt, "ack", "ack", actor, at, note)


def resolve(evt: Event, actor: str = DEFAULT_ACTOR, at: Optional[int] = None,
            note: Optional[str] = None) -> Tuple[Event, Optional[IncidentTimelineEntry]]:
    return _advance(evt, "resolved", "resolved", actor, at, note)


def dispatch(evt: Event, actor: str = DEFAULT_ACTOR, at: Optional[int] = None,
             note: Optional[str] = None) -> Tuple[Event, IncidentTimelineEntry]:
    """Always logged; an operator dispatch on a new incident also acknowledges it."""
    if evt.incident_status == "resolved":
        raise IncidentTransitionError(f"{evt.id}: cannot dispatch a resolved incident")
    to_status = "ack" if evt.incident_status == "new" else evt.incident_status
    entry = _entry(evt, "dispatch", actor, at, to_status, note)
    return replace(evt, incident_status=to_status), entry


def _same_action(a: IncidentTimelineEntry, b: IncidentTimelineEntry) -> bool:
    return (a.event_id == b.event_id and a.action == b.action and a.actor == b.actor
            and a.from_status == b.from_status and a.to_status == b.to_status and a.note == b.note)


class IncidentTimeline:
    """Newest-first audit log, bounded to TIMELINE_MAX entries."""

    def __init__(self, entries: Iterable[IncidentTimelineEntry] = ()):
        self._entries: List[IncidentTimelineEntry] = sorted(entries, key=lambda e: -e.at)[:TIMELINE_MAX]

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> List[IncidentTimelineEntry]:
        return list(self._entries)

    def for_event(self, event_id: str) -> List[IncidentTimelineEntry]:
        return [e for e in self._entries if e.event_id == event_id]

    def append(self, entry: IncidentTimelineEntry) -> bool:
        """False when an identical action was already logged within the dedupe window."""
        for prev in self._entries:
            if _same_action(prev, entry) and abs(entry.at - prev.at) <= TIMELINE_DEDUPE_WINDOW_MS:
                log.debug("[timeline] duplicate %s on %s within window, skipped", entry.action, entry.event_id)
                return False
        self._entries = sorted([entry, *self._entries], key=lambda e: -e.at)[:TIMELINE_MAX]
        return True

    def ack_times(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for e in self._entries:
            if e.to_status == "ack" and e.at > out.get(e.event_id, 0):
                out[e.event_id] = e.at
        return out

    def to_list(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self._entries]


def parse_timeline(raw: Any) -> List[IncidentTimelineEntry]:
    """Persisted rows back to entries; malformed rows are skipped."""
    if not isinstance(raw, list):
        return []
    rows: List[IncidentTimelineEntry] = []
    for row in raw:
        if not isinstance(row, dict) or row.get("action") not in INCIDENT_ACTIONS:
            continue
        required = [row.get(k) for k in ("id", "event_id", "zone_id", "actor")]
        at = row.get("at")
        if not all(isinstance(v, str) and v for v in required):
            continue
        if isinstance(at, bool) or not isinstance(at, (int, float)) or not math.isfinite(at):
            continue
        from_status = row.get("from_status") if row.get("from_status") in INCIDENT_STATUSES else None
        to_status = row.get("to_status") if row.get("to_status") in INCIDENT_STATUSES else None
        note = row.get("note") if isinstance(row.get("note"), str) else None
        rows.append(IncidentTimelineEntry(
            id=row["id"], event_id=row["event_id"], zone_id=row["zone_id"], action=row["action"],
            actor=row["actor"], at=int(at), from_status=from_status, to_status=to_status, note=note,
        ))
    return sorted(rows, key=lambda e: -e.at)[:TIMELINE_MAX]


@dataclass
class ZoneSlaAlert:
    zone_id: str
    open_count: int = 0
    worst_age_sec: int = 0
    overdue_ack_count: int = 0
    overdue_resolve_count: int = 0
    top_severity: int = 1
    ack_threshold_sec: int = ACK_SLA_MS // 1000
    resolve_threshold_sec: int = RESOLVE_SLA_MS // 1000

    @property
    def breach_count(self) -> int:
        return self.overdue_ack_count + self.overdue_resolve_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "zone_id": self.zone_id,
            "breach_count": self.breach_count,
            "open_count": self.open_count,
            "worst_age_sec": self.worst_age_sec,
            "overdue_ack_count": self.overdue_ack_count,
            "overdue_resolve_count": self.overdue_resolve_count,
            "ack_threshold_sec": self.ack_threshold_sec,
            "resolve_threshold_sec": self.resolve_threshold_sec,
            "top_severity": self.top_severity,
        }


def sla_breaches(events: Iterable[Event], timeline: IncidentTimeline, now: int,
                 limit: int = 8) -> List[ZoneSlaAlert]:
    """
    Zones holding open incidents that are overdue: new for longer than ACK_SLA_MS, or
    acknowledged (latest ack entry, else detection time) for longer than RESOLVE_SLA_MS.
    Ordered by breach count, then top severity, then worst age.
    """
    ack_at = timeline.ack_times()
    by_zone: Dict[str, ZoneSlaAlert] = {}
    for evt in events:
        if evt.incident_status == "resolved":
            continue
        row = by_zone.setdefault(evt.zone_id, ZoneSlaAlert(zone_id=evt.zone_id))
        row.open_count += 1
        row.top_severity = max(row.top_severity, evt.severity)
        row.worst_age_sec = max(row.worst_age_sec, max(0, round((now - evt.detected_at) / 1000)))
        if evt.incident_status == "new":
            if now - evt.detected_at > ACK_SLA_MS:
                row.overdue_ack_count += 1
        elif now - ack_at.get(evt.id, evt.detected_at) > RESOLVE_SLA_MS:
            row.overdue_resolve_count += 1

    alerts = [r for r in by_zone.values() if r.breach_count > 0]
    alerts.sort(key=lambda r: (-r.breach_count, -r.top_severity, -r.worst_age_sec))
    return alerts[:limit]
