import json

import pytest

from opsguard.ingest import (
    collect_remove_ids, drop_low_signal_events, parse_sync_mode, parse_sync_mode_value, normalize_edge_object,
)

TS = 1739168718000


def _rec(rid, **kw):
    base = {"id": rid, "timestamp": TS, "x": 0.5, "y": 0.5, "type": "crowd"}
    base.update(kw)
    return base


def test_unparsable_payloads_yield_empty_merge_batch(normalizer):
    for payload in ("not json {", b"\xff\xfe", "", None, 42, "\"just a string\""):
        batch = normalizer.normalize(payload)
        assert batch.mode == "merge"
        assert batch.upsert == [] and batch.remove_ids == []
        assert batch.signal_patch.is_empty()


def test_bytes_and_str_payloads(normalizer):
    body = json.dumps({"events": [_rec("a"), _rec("b")]})
    assert [e.id for e in normalizer.normalize(body).upsert] == ["a", "b"]
    assert [e.id for e in normalizer.normalize(body.encode()).upsert] == ["a", "b"]


def test_top_level_array_with_remove_ops(normalizer):
    batch = normalizer.normalize([_rec("a"), {"id": "gone", "op": "DELETE"}, {"id": "x", "op": "dismissed"}])
    assert batch.mode == "merge"
    assert [e.id for e in batch.upsert] == ["a"]
    assert batch.remove_ids == ["gone", "x"]


def test_shape_a_records(normalizer):
    payload = {"meta": {"request_id": "r1"}, "records": [{
        "eventId": "A-1", "detectedAt": "2025-02-10T06:25:18.000Z", "receivedAt": "2025-02-10T06:25:19.200Z",
        "eventType": "FALL", "priority": "P1", "score": 93.5, "zoneId": "zone-s001-center",
        "cameraId": "cam-mid-02", "status": "ACKNOWLEDGED", "location": {"xNorm": 0.35, "yNorm": 0.5},
        "provider": "vision-v2", "note": "Possible fall detected",
    }]}
    (evt,) = normalizer.normalize(payload).upsert
    assert evt.id == "A-1"
    assert evt.type == "fall"
    assert evt.severity == 3
    assert evt.confidence == pytest.approx(0.935)
    assert evt.incident_status == "ack"
    assert evt.latency_ms == 1200
    assert evt.source == "api"
    assert evt.camera_id == "cam-mid-02"


def test_shape_b_batch(normalizer):
    payload = {"type": "alert.batch", "payload": {"items": [{
        "alarm_id": "B-1", "timestamp": 1739168718, "ingested_at": 1739168718900, "category": "loiter",
        "level": "low", "confidence": 81.0, "zone": {"id": "zone-s001-aisle-b"},
        "position": {"x": 87.5, "y": 48.0, "unit": "percent"}, "state": "IN_PROGRESS",
        "camera": {"id": "cam-back-04"}, "store": {"id": "s001"}, "message": "Someone is lingering",
    }]}}
    batch = normalizer.normalize(payload)
    assert batch.mode == "merge"
    (evt,) = batch.upsert
    assert evt.id == "B-1"
    assert evt.type == "loitering"
    assert (evt.x, evt.y) == pytest.approx((0.875, 0.48))
    assert evt.incident_status == "ack"
    assert evt.note == "Someone is lingering"


def test_single_record_candidates(normalizer):
    batch = normalizer.normalize({"type": "alert.created", "payload": {"event": _rec("s-1")}})
    assert [e.id for e in batch.upsert] == ["s-1"]
    assert [e.id for e in normalizer.normalize(_rec("bare")).upsert] == ["bare"]


def test_single_remove_directive(normalizer):
    batch = normalizer.normalize({"event": {"id": "r-9", "operation": "removed"}})
    assert batch.upsert == []
    assert batch.remove_ids == ["r-9"]


def test_deletion_type_string(normalizer):
    batch = normalizer.normalize({"type": "alert.deleted", "alert": {"alarm_id": "del-1"}})
    assert batch.remove_ids == ["del-1"]


def test_root_remove_id_lists():
    record = {
        "deleted_ids": ["a", 7, {"eventId": "b"}],
        "payload": {"removed_ids": ["c"], "sync": {"deleted": [{"id": "a"}]}},
        "sync": {"removed": ["d"]},
    }
    assert collect_remove_ids(record) == ["a", "7", "b", "c", "d"]


def test_heartbeat_carries_only_removals(normalizer):
    batch = normalizer.normalize({"type": "ping", "removed_ids": ["old"], "event": _rec("ignored")})
    assert batch.upsert == []
    assert batch.remove_ids == ["old"]


@pytest.mark.parametrize("value,expected", [
    (True, "replace"), (False, "merge"), ("FULL_SYNC", "replace"), ("events.snapshot", "replace"),
    ("resync", "replace"), ("delta", "merge"), ("incremental-upsert", "merge"), ("whatever", None), (None, None),
])
def test_sync_mode_values(value, expected):
    assert parse_sync_mode_value(value) == expected


def test_sync_mode_field_priority():
    assert parse_sync_mode({"sync": {"mode": "replace"}, "type": "delta"}) == "replace"
    assert parse_sync_mode({"snapshot": True, "type": "delta"}) == "replace"
    assert parse_sync_mode({"type": "events.snapshot"}) == "replace"
    assert parse_sync_mode({"meta": {"sync_mode": "patch"}, "snapshot": True}) == "merge"
    assert parse_sync_mode({}) is None


def test_replace_mode_batch(normalizer):
    batch = normalizer.normalize({"sync_mode": "snapshot", "events": [_rec("a")]})
    assert batch.mode == "replace"
    assert [e.id for e in batch.upsert] == ["a"]


def test_edge_objects_inherit_envelope(normalizer):
    payload = {
        "deviceId": "edge-7", "timestamp": TS, "eventType": "SAFETY", "severity": "Critical",
        "store_id": "s055",
        "data": {"frame": {"width": 1280, "height": 720}, "objects": [
            {"track_id": 3, "label": "person", "status": "fall_down", "confidence": 0.88,
             "location": {"bbox": [600, 300, 680, 420]},
             "vlm_analysis": {"summary": "Person on floor", "cause": "Faint", "action": "Call_119"}},
        ]},
    }
    batch = normalizer.normalize(payload)
    (evt,) = batch.upsert
    assert evt.id == "edge-7:track-3"
    assert evt.type == "fall"
    assert evt.severity == 3
    assert evt.store_id == "s055"
    assert (evt.x, evt.y) == pytest.approx((0.5, 0.5))
    assert evt.note == "Person on floor | cause:Faint | action:Call_119"
    # signal-derived events are reported separately, not upserted
    assert batch.signal_labels == ["safety"]
    assert batch.signal_patch.safety.fall_count == 1


def test_edge_object_prefers_own_note():
    merged = normalize_edge_object({"deviceId": "d"}, {"note": "own", "vlm_analysis": {"summary": "vlm"}})
    assert merged["note"] == "own"
    assert "vlm_analysis" not in merged
    composed = normalize_edge_object({}, {"vlm_analysis": {"summary": "s", "cause": "c", "action": "a"}})
    assert composed["note"] == "s | cause:c | action:a"
    assert "vlm_analysis" not in composed
    bare = normalize_edge_object({}, {"vlm_analysis": {}})
    assert "note" not in bare and bare["vlm_analysis"] == {}
    assert merged["deviceId"] == "d"
    assert normalize_edge_object({}, "junk") is None


def test_low_signal_events_dropped(normalizer):
    batch = normalizer.normalize([
        _rec("weak", type="mystery", severity=1, confidence=0.1),
        _rec("kept-type", type="crowd", severity=1, confidence=0.1),
        _rec("kept-conf", type="mystery", severity=1, confidence=0.5),
    ])
    assert sorted(e.id for e in batch.upsert) == ["kept-conf", "kept-type"]
    assert drop_low_signal_events([]) == []


def test_crowd_envelope_patch_only(normalizer):
    batch = normalizer.normalize({"eventType": "CROWD", "timestamp": TS, "deviceId": "cam-q",
                                  "data": {"count": 14, "zone_id": "zone-s001-cashier", "congestion_level": "High"}})
    assert batch.upsert == []
    assert batch.signal_labels == ["crowd"]
    crowd = batch.signal_patch.crowd
    assert (crowd.count, crowd.tone, crowd.zone_id, crowd.updated_at) == (14, "critical", "zone-s001-cashier", TS)
