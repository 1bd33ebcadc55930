from __future__ import annotations
from dataclasses import dataclass, field, asdict, fields
from typing import Any, Dict, List, Literal, Optional

EventType = Literal["crowd", "fall", "fight", "loitering", "unknown"]
IncidentStatus = Literal["new", "ack", "resolved"]
EventSource = Literal["demo", "camera", "api", "unknown"]
IncidentAction = Literal["detected", "ack", "dispatch", "resolved"]
SyncMode = Literal["merge", "replace"]

EVENT_TYPES = ("crowd", "fall", "fight", "loitering", "unknown")
INCIDENT_STATUSES = ("new", "ack", "resolved")
EVENT_SOURCES = ("demo", "camera", "api", "unknown")
INCIDENT_ACTIONS = ("detected", "ack", "dispatch", "resolved")


@dataclass(frozen=True)
class Event:
    id: str
    store_id: str
    detected_at: int                 # epoch ms (when model detected)
    ingested_at: int                 # epoch ms (when platform received)
    latency_ms: int
    type: EventType
    severity: int                    # 1..3
    confidence: float                # 0..1
    zone_id: str
    source: EventSource
    incident_status: IncidentStatus
    x: float                         # normalized 0..1
    y: float                         # normalized 0..1
    camera_id: Optional[str] = None
    track_id: Optional[str] = None
    object_label: Optional[str] = None
    raw_status: Optional[str] = None
    model_version: Optional[str] = None
    world_x_m: Optional[float] = None
    world_z_m: Optional[float] = None
    note: Optional[str] = None

    def __post_init__(self):
        if not (0.0 <= self.x <= 1.0 and 0.0 <= self.y <= 1.0):
            raise ValueError(f"event {self.id}: position ({self.x}, {self.y}) outside [0,1]")
        if self.severity not in (1, 2, 3):
            raise ValueError(f"event {self.id}: severity {self.severity!r}")
        if not (0.0 <= self.confidence <= 1.0):
            raise ValueError(f"event {self.id}: confidence {self.confidence!r}")
        if self.type not in EVENT_TYPES:
            raise ValueError(f"event {self.id}: type {self.type!r}")
        if self.incident_status not in INCIDENT_STATUSES:
            raise ValueError(f"event {self.id}: incident_status {self.incident_status!r}")
        if self.source not in EVENT_SOURCES:
            raise ValueError(f"event {self.id}: source {self.source!r}")
        if self.latency_ms < 0:
            raise ValueError(f"event {self.id}: negative latency")

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Event":
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in names})


@dataclass(frozen=True)
class IncidentTimelineEntry:
    id: str
    event_id: str
    zone_id: str
    action: IncidentAction
    actor: str
    at: int
    from_status: Optional[IncidentStatus] = None
    to_status: Optional[IncidentStatus] = None
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


SignalTone = Literal["idle", "ok", "watch", "critical"]


@dataclass(frozen=True)
class CrowdSignal:
    updated_at: Optional[int] = None
    device_id: str = "-"
    zone_id: str = "-"
    count: int = 0
    tone: SignalTone = "idle"
    congestion_level: str = "-"


@dataclass(frozen=True)
class SafetySignal:
    updated_at: Optional[int] = None
    device_id: str = "-"
    zone_id: str = "-"
    count: int = 0
    tone: SignalTone = "idle"
    severity: str = "-"
    fall_count: int = 0
    summary: str = "-"
    action: str = "-"


@dataclass(frozen=True)
class TrashSignal:
    updated_at: Optional[int] = None
    device_id: str = "-"
    zone_id: str = "-"
    count: int = 0
    tone: SignalTone = "idle"
    severity: str = "-"
    trash_count: int = 0


@dataclass(frozen=True)
class SignalChecksState:
    crowd: CrowdSignal = field(default_factory=CrowdSignal)
    safety: SafetySignal = field(default_factory=SafetySignal)
    trash: TrashSignal = field(default_factory=TrashSignal)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SignalChecksState":
        d = d or {}
        return cls(crowd=CrowdSignal(**(d.get("crowd") or {})),
                   safety=SafetySignal(**(d.get("safety") or {})),
                   trash=TrashSignal(**(d.get("trash") or {})))


INITIAL_SIGNAL_CHECKS = SignalChecksState()


@dataclass
class SignalPatch:
    """Slots left as None are not touched by a merge."""
    crowd: Optional[CrowdSignal] = None
    safety: Optional[SafetySignal] = None
    trash: Optional[TrashSignal] = None

    def is_empty(self) -> bool:
        return self.crowd is None and self.safety is None and self.trash is None


@dataclass
class SyncBatch:
    mode: SyncMode = "merge"
    upsert: List[Event] = field(default_factory=list)
    remove_ids: List[str] = field(default_factory=list)
    signal_patch: SignalPatch = field(default_factory=SignalPatch)
    signal_labels: List[str] = field(default_factory=list)
