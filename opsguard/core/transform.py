# opsguard/core/transform.py
from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
import json
import logging
import math

import numpy as np

from .geometry import Point, apply_homography, clamp01, compute_homography

log = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parents[1] / "data"
DEFAULT_REFERENCE_POINTS = DATA_DIR / "photo_reference_points.json"

CAMERA_FRAME_SIZE: Tuple[int, int] = (1280, 720)  # (w, h)
MODEL_REF_WIDTH_M = 13.0
MODEL_REF_DEPTH_M = 15.12058
ANCHOR_TRACK_IDS: Tuple[int, ...] = (2, 6, 5, 1)


@dataclass(frozen=True)
class ReferencePoint:
    """A photographed marker: predicted pixel in the camera frame + surveyed world meters."""
    track_id: int
    pred_x: float
    pred_y: float
    world_x: float
    world_z: float
    status: str = "walking"
    note: str = ""


def _to_pair(value: Any) -> Optional[Point]:
    if not isinstance(value, (list, tuple)) or len(value) < 2:
        return None
    try:
        x, y = float(value[0]), float(value[1])
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(x) and math.isfinite(y)):
        return None
    return x, y


def parse_reference_points(rows: Any) -> List[ReferencePoint]:
    """Rows missing a track id, pred pair or world pair are skipped."""
    out: List[ReferencePoint] = []
    for row in rows if isinstance(rows, list) else []:
        if not isinstance(row, dict):
            continue
        pred = _to_pair(row.get("pred"))
        world = _to_pair(row.get("world"))
        try:
            track_id = int(float(row.get("trackId")))
        except (TypeError, ValueError):
            continue
        if pred is None or world is None:
            continue
        out.append(ReferencePoint(
            track_id=track_id,
            pred_x=pred[0], pred_y=pred[1],
            world_x=world[0], world_z=world[1],
            status=row.get("status") if isinstance(row.get("status"), str) else "walking",
            note=row.get("note") if isinstance(row.get("note"), str) else f"photo seed {track_id}",
        ))
    return out


def load_reference_points(path: Optional[Path] = None) -> List[ReferencePoint]:
    p = Path(path) if path else DEFAULT_REFERENCE_POINTS
    with open(p, "r", encoding="utf-8") as f:
        return parse_reference_points(json.load(f))


class CoordinateTransform:
    """
    World meters <-> normalized floor-plan coordinates.

    The homography is solved once in the constructor from the reference points and
    is read-only afterwards. World Z is negated before projection: the calibration
    data was fit under that sign convention.
    """

    def __init__(
        self,
        reference_points: Sequence[ReferencePoint],
        frame_size: Tuple[int, int] = CAMERA_FRAME_SIZE,
        model_width_m: float = MODEL_REF_WIDTH_M,
        model_depth_m: float = MODEL_REF_DEPTH_M,
        anchor_track_ids: Sequence[int] = ANCHOR_TRACK_IDS,
        world_offset_m: Tuple[float, float] = (0.0, 0.0),
    ):
        self.reference_points = list(reference_points)
        self.frame_size = (int(frame_size[0]), int(frame_size[1]))
        self.model_width_m = float(model_width_m)
        self.model_depth_m = float(model_depth_m)
        self.anchor_track_ids = tuple(int(t) for t in anchor_track_ids)
        self.offset_x_m = float(world_offset_m[0])
        self.offset_z_m = float(world_offset_m[1])
        self.matrix: Optional[np.ndarray] = self._calibrate()
        if self.matrix is None:
            log.warning("World->map homography unavailable (%d reference points); using affine fallback",
                        len(self.reference_points))

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], world_offset_m: Tuple[float, float] = (0.0, 0.0)) -> "CoordinateTransform":
        cal = cfg or {}
        frame = cal.get("frame", {}) or {}
        return cls(
            load_reference_points(cal.get("reference_points")),
            frame_size=(int(frame.get("width", CAMERA_FRAME_SIZE[0])),
                        int(frame.get("height", CAMERA_FRAME_SIZE[1]))),
            model_width_m=float(cal.get("model_width_m", MODEL_REF_WIDTH_M)),
            model_depth_m=float(cal.get("model_depth_m", MODEL_REF_DEPTH_M)),
            anchor_track_ids=cal.get("anchor_track_ids") or ANCHOR_TRACK_IDS,
            world_offset_m=world_offset_m,
        )

    def _calibrate(self) -> Optional[np.ndarray]:
        if len(self.reference_points) < 4:
            return None
        by_track = {p.track_id: p for p in self.reference_points}
        preferred = [by_track[t] for t in self.anchor_track_ids if t in by_track]
        anchors = preferred if len(preferred) >= 4 else self.reference_points

        w, h = self.frame_size
        src = [(p.world_x, -p.world_z) for p in anchors]
        dst = [(clamp01(p.pred_x / w), clamp01(p.pred_y / h)) for p in anchors]
        return compute_homography(src[:4], dst[:4])

    # ------------- public API -------------

    def world_to_map_norm(self, world_x: float, world_z: float) -> Point:
        sx, sz = world_x, -world_z
        mapped = apply_homography(self.matrix, sx, sz)
        if mapped is not None:
            return clamp01(mapped[0]), clamp01(mapped[1])
        return (clamp01(sx / self.model_width_m + 0.5),
                clamp01(sz / self.model_depth_m + 0.5))

    def locate_world(self, world_x: float, world_z: float) -> Point:
        """Same as world_to_map_norm, for coordinates in the zone map's world frame."""
        return self.world_to_map_norm(world_x - self.offset_x_m, world_z - self.offset_z_m)

    def norm_to_world(self, x: float, y: float) -> Tuple[float, float]:
        nx, ny = clamp01(x), clamp01(y)
        return (self.offset_x_m + (nx - 0.5) * self.model_width_m,
                self.offset_z_m - (ny - 0.5) * self.model_depth_m)

    def map_norm_to_scene(self, norm_x: float, norm_y: float,
                          width_m: Optional[float] = None,
                          depth_m: Optional[float] = None) -> Tuple[float, float]:
        width = width_m if width_m is not None and math.isfinite(width_m) and width_m > 0 else self.model_width_m
        depth = depth_m if depth_m is not None and math.isfinite(depth_m) and depth_m > 0 else self.model_depth_m
        return (clamp01(norm_x) - 0.5) * width, (clamp01(norm_y) - 0.5) * depth
