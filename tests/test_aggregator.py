import pytest

from opsguard.core.events.aggregator import (
    congestion_to_tone, merge_signal_checks, severity_to_level, severity_to_tone,
)
from opsguard.core.events.models import (
    INITIAL_SIGNAL_CHECKS, CrowdSignal, SafetySignal, SignalChecksState, SignalPatch, TrashSignal,
)

TS = 1739168718000


def safety_envelope(**kw):
    env = {
        "deviceId": "camera-edge-02",
        "timestamp": TS,
        "eventType": "SAFETY",
        "severity": "CRITICAL",
        "data": {"count": 1, "zone_id": "zone-s001-center", "objects": [{
            "track_id": 7, "label": "person", "status": "fall_down", "confidence": 0.91,
            "location": {"world": {"x": 12.5, "z": 8.2}},
            "vlm_analysis": {"summary": "Person lying down", "cause": "Faint", "action": "Call_119"},
        }]},
    }
    env.update(kw)
    return env


def test_safety_envelope_scenario(signals):
    res = signals.parse(safety_envelope())
    assert res.labels == ["safety"]
    assert res.patch.safety.fall_count == 1
    assert res.patch.safety.tone == "critical"
    assert res.patch.safety.summary == "Person lying down"
    assert res.patch.safety.action == "Call_119"
    (evt,) = res.generated_events
    assert evt.type == "fall"
    assert evt.world_x_m == pytest.approx(12.5)
    assert evt.world_z_m == pytest.approx(8.2)
    assert evt.id == f"camera-edge-02:safety:7:{TS}"
    assert evt.severity == 3
    assert evt.object_label == "person"
    assert evt.raw_status == "fall_down"
    assert evt.source == "api"
    assert evt.note == "Person lying down | cause:Faint | action:Call_119"
    assert 0 <= evt.x <= 1 and 0 <= evt.y <= 1


def test_envelope_found_inside_wrappers(signals):
    res = signals.parse({"message": {"events": [safety_envelope()]}})
    assert res.labels == ["safety"]
    assert len(res.generated_events) == 1


def test_object_with_bbox_only_uses_frame(signals):
    env = safety_envelope()
    env["data"]["frame"] = {"width": 640, "height": 480}
    env["data"]["objects"] = [{"status": "aggressive", "location": {"bbox": [300, 220, 340, 260]}}]
    (evt,) = signals.parse(env).generated_events
    assert evt.type == "fight"
    assert (evt.x, evt.y) == pytest.approx((0.5, 0.5))
    assert evt.id == f"camera-edge-02:safety:0:{TS}"
    assert evt.object_label == "unknown"


def test_object_without_position_is_skipped(signals):
    env = safety_envelope()
    env["data"]["objects"] = [{"status": "fall_down"}]
    res = signals.parse(env)
    assert res.generated_events == []
    assert res.patch.safety.fall_count == 1


def test_cleaning_envelope(signals):
    env = {"eventType": "cleaning", "timestamp": TS, "data": {"objects": [
        {"track_id": 1, "label": "bottle", "status": "trash_detected", "location": {"bbox": [0, 0, 128, 72]}},
        {"track_id": 2, "label": "cup", "status": "spill", "location": {"bbox": [0, 0, 128, 72]}},
    ]}}
    res = signals.parse(env)
    assert res.labels == ["trash"]
    trash = res.patch.trash
    assert (trash.count, trash.trash_count, trash.severity, trash.tone) == (2, 1, "Warning", "watch")
    assert trash.device_id == "camera-edge-01"
    assert trash.zone_id == "Store_Main"
    assert all(e.object_label is None and e.severity == 2 for e in res.generated_events)
    assert {e.type for e in res.generated_events} == {"unknown"}


def test_crowd_envelope_and_defaults(signals, now_ms):
    res = signals.parse({"type": "crowd", "data": {"count": "3.6"}})
    crowd = res.patch.crowd
    assert crowd.updated_at == now_ms
    assert crowd.count == 4
    assert crowd.congestion_level == "Unknown"
    assert crowd.tone == "idle"
    assert res.generated_events == []


def test_unrelated_payload_has_no_patch(signals):
    res = signals.parse({"events": [{"type": "fall", "id": "x"}]})
    assert res.patch.is_empty()
    assert res.labels == []


@pytest.mark.parametrize("level,tone", [("High", "critical"), ("medium", "watch"), ("LOW", "ok"), ("?", "idle")])
def test_congestion_tone(level, tone):
    assert congestion_to_tone(level) == tone


def test_severity_tone_and_level():
    assert severity_to_tone("Critical") == "critical"
    assert severity_to_tone("warning") == "watch"
    assert severity_to_tone("info") == "ok"
    assert severity_to_tone(None) == "idle"
    assert [severity_to_level(s) for s in ("critical", "Warn", "info", None)] == [3, 2, 1, 1]


def test_merge_freshness():
    held = merge_signal_checks(INITIAL_SIGNAL_CHECKS, SignalPatch(safety=SafetySignal(updated_at=TS, fall_count=2)))
    stale = merge_signal_checks(held, SignalPatch(safety=SafetySignal(updated_at=TS - 1, fall_count=9)))
    assert stale.safety == held.safety
    equal = merge_signal_checks(held, SignalPatch(safety=SafetySignal(updated_at=TS, fall_count=5)))
    assert equal.safety.fall_count == 5


def test_merge_slots_are_independent():
    prev = SignalChecksState(crowd=CrowdSignal(updated_at=TS, count=1))
    out = merge_signal_checks(prev, SignalPatch(trash=TrashSignal(updated_at=TS - 10, trash_count=3)))
    assert out.crowd == prev.crowd
    assert out.trash.trash_count == 3
    assert out.safety == prev.safety


def test_untimed_patch_only_fills_untouched_slot():
    untimed = SignalPatch(crowd=CrowdSignal(updated_at=None, count=5))
    assert merge_signal_checks(INITIAL_SIGNAL_CHECKS, untimed).crowd.count == 5
    timed = SignalChecksState(crowd=CrowdSignal(updated_at=TS, count=1))
    assert merge_signal_checks(timed, untimed).crowd.count == 1
