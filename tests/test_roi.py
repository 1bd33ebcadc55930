import json

import numpy as np
import pytest

from opsguard.core.roi import ZoneMap, ZoneMapError, ZoneResolver, load_zone_map


def test_zone_map_normalized_at_load(zone_map):
    assert zone_map.store_id == "s001"
    assert len(zone_map.zones) == 8
    back = zone_map.zone("zone-s001-back")
    assert back.bounds == pytest.approx((0.0, 0.0, 1.0, 80 / 427))
    assert back.centroid_norm == pytest.approx((0.5, 40 / 427))


def test_explicit_known_zone_wins(resolver):
    assert resolver.resolve(0.1, 0.1, "zone-s001-exit") == "zone-s001-exit"


def test_unknown_specific_zone_trusted(resolver):
    assert resolver.resolve(0.1, 0.1, "Dock_7") == "Dock_7"


@pytest.mark.parametrize("generic", ["store", "Site", "SHOP", "global", "all"])
def test_generic_zone_ids_ignored(resolver, generic):
    assert resolver.resolve(0.1, 0.5, generic) == "zone-s001-aisle-a"


def test_polygon_containment(resolver):
    assert resolver.resolve(0.1, 0.05) == "zone-s001-back"
    assert resolver.resolve(0.35, 0.5) == "zone-s001-center"
    assert resolver.resolve(0.9, 0.9) == "zone-s001-exit"


def test_hole_falls_through_to_nearest_centroid(resolver, zone_map):
    cashier = zone_map.zone("zone-s001-cashier")
    assert not cashier.contains(0.48, 0.61)
    assert resolver.resolve(0.48, 0.61) == "zone-s001-cashier"


def test_nearest_centroid_for_uncovered_point():
    doc = {
        "store_id": "t1",
        "map": {"width": 100, "height": 100},
        "zones": [
            {"zone_id": "left", "polygon": [[0, 0], [10, 0], [10, 10], [0, 10]], "centroid": [5, 5]},
            {"zone_id": "right", "polygon": [[90, 90], [100, 90], [100, 100], [90, 100]], "centroid": [95, 95]},
        ],
    }
    r = ZoneResolver(ZoneMap.from_dict(doc))
    assert r.resolve(0.3, 0.3) == "left"
    assert r.resolve(0.7, 0.8) == "right"


def test_centroid_defaults_to_vertex_mean():
    doc = {"map": {"width": 10, "height": 10},
           "zones": [{"zone_id": "z", "polygon": [[0, 0], [10, 0], [10, 10], [0, 10]]}]}
    zm = ZoneMap.from_dict(doc)
    assert zm.zones[0].centroid_norm == pytest.approx((0.5, 0.5))
    assert zm.store_id == "s001"


@pytest.mark.parametrize("doc", [
    [],
    {"map": {"width": 100}},
    {"map": {"width": 0, "height": 10}, "zones": []},
    {"map": {"width": 100, "height": 100}, "zones": []},
    {"map": {"width": 100, "height": 100}, "zones": [{"zone_id": "z", "polygon": [[0, 0], [1, 1]]}]},
    {"map": {"width": 100, "height": 100}, "zones": [{"polygon": [[0, 0], [1, 0], [1, 1]]}]},
])
def test_malformed_zone_maps_raise(doc):
    with pytest.raises(ZoneMapError):
        ZoneMap.from_dict(doc)


def test_load_zone_map_from_path(tmp_path):
    p = tmp_path / "zm.json"
    p.write_text(json.dumps({"store_id": "s9", "map": {"width": 4, "height": 4},
                             "zones": [{"zone_id": "a", "polygon": [[0, 0], [4, 0], [4, 4], [0, 4]]}]}))
    zm = load_zone_map(p)
    assert zm.store_id == "s9"
    assert ZoneResolver(zm).resolve(0.5, 0.5) == "a"


def test_sample_point_inside_zone(resolver):
    rng = np.random.default_rng(3)
    for zid in resolver.zone_ids:
        x, y = resolver.sample_point(zid, rng)
        assert resolver.contains(zid, x, y)


def test_sample_point_unknown_zone(resolver):
    with pytest.raises(KeyError):
        resolver.sample_point("nope", np.random.default_rng(0))
