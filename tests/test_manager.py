import json

import pytest

from opsguard.core.events.incidents import ACK_SLA_MS, IncidentTransitionError
from opsguard.pipeline.manager import FeedManager

NOW_MS = 1739168800000


@pytest.fixture
def manager(adapter):
    return FeedManager(adapter=adapter, clock=adapter.clock)


def record(eid, age_ms=0, **kw):
    rec = {"id": eid, "timestamp": NOW_MS - age_ms, "type": "fall", "x": 0.5, "y": 0.5}
    rec.update(kw)
    return rec


def test_ingest_summary_and_state(manager):
    summary = manager.ingest(json.dumps({"events": [record("a"), record("b", 1000)]}).encode())
    assert summary == {"mode": "merge", "upserted": 2, "removed": 0, "signals": [], "total": 2}
    assert [e.id for e in manager.events()] == ["a", "b"]
    assert [e.id for e in manager.events(limit=1)] == ["a"]
    assert manager.get_event("b").type == "fall"
    assert manager.get_event("zzz") is None


def test_ingest_removal_and_signals(manager):
    manager.ingest([record("a"), record("b")])
    manager.ingest({"removed_ids": ["a"], "type": "ping"})
    assert [e.id for e in manager.events()] == ["b"]

    summary = manager.ingest({"eventType": "crowd", "timestamp": NOW_MS,
                              "data": {"count": 9, "congestion_level": "medium"}})
    assert summary["signals"] == ["crowd"]
    assert manager.signals().crowd.count == 9
    assert manager.signals().crowd.tone == "watch"


def test_replace_sync_keeps_manual_marker(manager):
    manager.ingest([record("a")])
    marker = manager.place_manual_marker(1.0, 2.0, mode="world")
    assert marker.id.startswith("manual-map-")
    assert (marker.world_x_m, marker.world_z_m) == (1.0, 2.0)
    assert marker.raw_status == "manual_target"

    manager.ingest({"snapshot": True, "events": [record("n")]})
    assert {e.id for e in manager.events()} == {"n", marker.id}


def test_pixel_marker(manager):
    marker = manager.place_manual_marker(640, 360, mode="pixel", camera_id="cam-9")
    assert (marker.x, marker.y) == pytest.approx((0.5, 0.5))
    assert marker.camera_id == "cam-9"
    assert marker.confidence >= 0.95


def test_marker_rejects_bad_input(manager):
    with pytest.raises(ValueError):
        manager.place_manual_marker(1, 1, mode="polar")
    with pytest.raises(ValueError):
        manager.place_manual_marker(1, 1, mode="pixel", frame_width=0)


def test_incident_actions(manager):
    manager.ingest([record("a")])
    evt, entry = manager.acknowledge("a", actor="kim")
    assert evt.incident_status == "ack"
    assert manager.get_event("a").incident_status == "ack"
    assert entry.actor == "kim"

    assert manager.acknowledge("a") == (evt, None)
    manager.resolve("a")
    with pytest.raises(IncidentTransitionError):
        manager.dispatch("a")
    with pytest.raises(KeyError):
        manager.acknowledge("missing")

    assert sorted(e.action for e in manager.timeline("a")) == ["ack", "resolved"]
    assert len(manager.timeline()) == 2


def test_sla_view(manager):
    manager.ingest([record("late", age_ms=ACK_SLA_MS + 5000), record("fresh")])
    (alert,) = manager.sla()
    assert alert.overdue_ack_count == 1
    assert alert.open_count == 2


def test_seed_reference_events_keeps_manual_markers(manager):
    manager.ingest([record("a")])
    marker = manager.place_manual_marker(0.0, 0.0)
    seeded = manager.seed_reference_events()
    ids = {e.id for e in manager.events()}
    assert len(seeded) == 6
    assert marker.id in ids
    assert "a" not in ids


def test_export_restore_roundtrip(manager, adapter):
    manager.ingest([record("a"), record("b", 500)])
    manager.ingest({"eventType": "crowd", "timestamp": NOW_MS, "data": {"count": 3}})
    manager.acknowledge("a")
    state = json.loads(json.dumps(manager.export_state()))
    state["events"].append({"id": "broken"})

    other = FeedManager(adapter=adapter, clock=adapter.clock)
    other.restore_state(state)
    assert [e.id for e in other.events()] == ["a", "b"]
    assert other.get_event("a").incident_status == "ack"
    assert other.signals() == manager.signals()
    assert len(other.timeline()) == 1
