# opsguard/core/roi.py
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
import json
import logging

import numpy as np

from .geometry import Point, point_in_zone

log = logging.getLogger(__name__)

DEFAULT_ZONE_MAP = Path(__file__).resolve().parents[1] / "data" / "zone_map_s001.json"

GENERIC_ZONE_IDS = frozenset({"store", "site", "shop", "global", "all"})


class ZoneMapError(ValueError):
    pass


def _ensure_np(arr: Sequence[Sequence[float]], what: str) -> np.ndarray:
    try:
        a = np.asarray(arr, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ZoneMapError(f"{what}: expected Nx2 numeric points") from e
    if a.ndim != 2 or a.shape[1] < 2 or a.shape[0] < 3:
        raise ZoneMapError(f"{what}: expected Nx2 points with at least 3 vertices")
    if not np.all(np.isfinite(a[:, :2])):
        raise ZoneMapError(f"{what}: non-finite coordinate")
    return a[:, :2]


def _norm_pts(pp: np.ndarray, w: float, h: float) -> np.ndarray:
    return np.clip(np.stack([pp[:, 0] / w, pp[:, 1] / h], axis=1), 0.0, 1.0)


@dataclass
class Zone:
    """Polygonal zone stored in normalized coords [0,1]; the source pixel polygon is kept for export."""
    zone_id: str
    name: str
    poly_norm: np.ndarray
    centroid_norm: Point
    holes_norm: List[np.ndarray] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_pixels(doc: Dict[str, Any], size: Tuple[float, float]) -> "Zone":
        w, h = size
        zone_id = doc.get("zone_id")
        if not isinstance(zone_id, str) or not zone_id.strip():
            raise ZoneMapError("zone without zone_id")
        poly = _norm_pts(_ensure_np(doc.get("polygon") or [], f"{zone_id}.polygon"), w, h)
        holes = [_norm_pts(_ensure_np(hole, f"{zone_id}.holes"), w, h) for hole in (doc.get("holes") or [])]

        c = doc.get("centroid")
        try:
            centroid = (min(1.0, max(0.0, float(c[0]) / w)), min(1.0, max(0.0, float(c[1]) / h)))
        except (TypeError, ValueError, IndexError):
            centroid = (float(poly[:, 0].mean()), float(poly[:, 1].mean()))
        return Zone(zone_id=zone_id, name=str(doc.get("name") or zone_id),
                    poly_norm=poly, centroid_norm=centroid, holes_norm=holes, raw=doc)

    def contains(self, x: float, y: float) -> bool:
        return point_in_zone(x, y, self.poly_norm, self.holes_norm)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        xs, ys = self.poly_norm[:, 0], self.poly_norm[:, 1]
        return float(xs.min()), float(ys.min()), float(xs.max()), float(ys.max())


@dataclass
class ZoneMap:
    store_id: str
    width: float
    height: float
    zones: List[Zone]
    world: Dict[str, Any] = field(default_factory=dict)
    doc: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(doc: Dict[str, Any]) -> "ZoneMap":
        if not isinstance(doc, dict):
            raise ZoneMapError("zone map must be a JSON object")
        m = doc.get("map") or {}
        try:
            w, h = float(m["width"]), float(m["height"])
        except (KeyError, TypeError, ValueError) as e:
            raise ZoneMapError("map.width / map.height are required") from e
        if w <= 0 or h <= 0:
            raise ZoneMapError("map.width / map.height must be positive")

        zones = [Zone.from_pixels(z, (w, h)) for z in (doc.get("zones") or [])]
        if not zones:
            raise ZoneMapError("zone map has no zones")
        return ZoneMap(store_id=str(doc.get("store_id") or "s001"), width=w, height=h,
                       zones=zones, world=dict(m.get("world") or {}), doc=doc)

    @property
    def world_offset_m(self) -> Tuple[float, float]:
        def _num(key: str) -> float:
            try:
                return float(self.world.get(key, 0.0))
            except (TypeError, ValueError):
                return 0.0
        return _num("offset_x_m"), _num("offset_z_m")

    def zone(self, zone_id: str) -> Optional[Zone]:
        for z in self.zones:
            if z.zone_id == zone_id:
                return z
        return None


def load_zone_map(path: Optional[Path] = None) -> ZoneMap:
    p = Path(path) if path else DEFAULT_ZONE_MAP
    with open(p, "r", encoding="utf-8") as f:
        zm = ZoneMap.from_dict(json.load(f))
    log.info("Loaded zone map store=%s zones=%d from %s", zm.store_id, len(zm.zones), p)
    return zm


class ZoneResolver:
    """
    explicit id -> polygon containment (document order) -> nearest centroid.
    Never returns None: the map is guaranteed to hold at least one zone.
    """

    def __init__(self, zone_map: ZoneMap):
        self.zone_map = zone_map
        self._ids = {z.zone_id for z in zone_map.zones}
        self._centroids = np.array([z.centroid_norm for z in zone_map.zones], dtype=np.float64)

    @property
    def zone_ids(self) -> List[str]:
        return [z.zone_id for z in self.zone_map.zones]

    def resolve(self, x: float, y: float, candidate: Optional[str] = None) -> str:
        if candidate:
            if candidate in self._ids:
                return candidate
            if candidate.lower() not in GENERIC_ZONE_IDS:
                return candidate

        for z in self.zone_map.zones:
            if z.contains(x, y):
                return z.zone_id

        d2 = np.sum((self._centroids - np.array([x, y])) ** 2, axis=1)
        return self.zone_map.zones[int(np.argmin(d2))].zone_id

    def contains(self, zone_id: str, x: float, y: float) -> bool:
        z = self.zone_map.zone(zone_id)
        return bool(z and z.contains(x, y))

    def sample_point(self, zone_id: str, rng: np.random.Generator, attempts: int = 36) -> Point:
        z = self.zone_map.zone(zone_id)
        if z is None:
            raise KeyError(zone_id)
        x0, y0, x1, y1 = z.bounds
        for _ in range(attempts):
            x, y = float(rng.uniform(x0, x1)), float(rng.uniform(y0, y1))
            if z.contains(x, y):
                return x, y
        return z.centroid_norm

