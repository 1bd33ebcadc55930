# opsguard/core/geometry.py
from __future__ import annotations
from typing import Optional, Sequence, Tuple
import math
import numpy as np

Point = Tuple[float, float]

EPS = float(np.finfo(float).eps)


def clamp_range(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def clamp01(value: float) -> float:
    return clamp_range(value, 0.0, 1.0)


def _finite_point(p: Sequence[float]) -> bool:
    return len(p) >= 2 and math.isfinite(p[0]) and math.isfinite(p[1])


def point_in_polygon(x: float, y: float, polygon: Sequence[Point]) -> bool:
    """Ray-casting parity test over an ordered vertex list."""
    inside = False
    n = len(polygon)
    j = n - 1
    for i in range(n):
        xi, yi = polygon[i][0], polygon[i][1]
        xj, yj = polygon[j][0], polygon[j][1]
        if (yi > y) != (yj > y):
            # horizontal edges never reach here, but keep the slope finite anyway
            dy = (yj - yi) or EPS
            if x < (xj - xi) * (y - yi) / dy + xi:
                inside = not inside
        j = i
    return inside


def point_in_zone(x: float, y: float, outer: Sequence[Point],
                  holes: Sequence[Sequence[Point]] = ()) -> bool:
    if not point_in_polygon(x, y, outer):
        return False
    return not any(point_in_polygon(x, y, h) for h in holes)


def solve_linear_system(a: np.ndarray, b: np.ndarray) -> Optional[np.ndarray]:
    """
    Gauss-Jordan elimination with partial pivoting.
    Returns None instead of raising when a pivot drops below machine epsilon.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    n = a.shape[0]
    if n == 0 or a.shape != (n, n) or b.shape != (n,):
        return None

    aug = np.hstack([a, b.reshape(-1, 1)])
    for col in range(n):
        pivot_row = col + int(np.argmax(np.abs(aug[col:, col])))
        if abs(aug[pivot_row, col]) < EPS:
            return None
        if pivot_row != col:
            aug[[col, pivot_row]] = aug[[pivot_row, col]]

        aug[col] = aug[col] / aug[col, col]
        factors = aug[:, col].copy()
        factors[col] = 0.0
        factors[np.abs(factors) < EPS] = 0.0
        aug -= np.outer(factors, aug[col])

    return aug[:, n]


def compute_homography(src: Sequence[Point], dst: Sequence[Point]) -> Optional[np.ndarray]:
    """
    3x3 projective matrix (h[2,2] fixed at 1) mapping src -> dst.
    Only the first four correspondences are used.
    """
    if len(src) < 4 or len(dst) < 4:
        return None
    src4 = [tuple(map(float, p)) for p in src[:4]]
    dst4 = [tuple(map(float, p)) for p in dst[:4]]
    if not all(_finite_point(p) for p in src4 + dst4):
        return None

    a = np.zeros((8, 8), dtype=np.float64)
    b = np.zeros(8, dtype=np.float64)
    for i, ((x, y), (u, v)) in enumerate(zip(src4, dst4)):
        a[2 * i] = [x, y, 1, 0, 0, 0, -u * x, -u * y]
        b[2 * i] = u
        a[2 * i + 1] = [0, 0, 0, x, y, 1, -v * x, -v * y]
        b[2 * i + 1] = v

    h = solve_linear_system(a, b)
    if h is None or not np.all(np.isfinite(h)):
        return None
    return np.append(h, 1.0).reshape(3, 3)


def apply_homography(matrix: Optional[np.ndarray], x: float, y: float) -> Optional[Point]:
    if matrix is None:
        return None
    m = np.asarray(matrix, dtype=np.float64).reshape(-1)
    if m.shape[0] != 9:
        return None

    w = m[6] * x + m[7] * y + m[8]
    if not math.isfinite(w) or abs(w) < EPS:
        return None
    mx = (m[0] * x + m[1] * y + m[2]) / w
    my = (m[3] * x + m[4] * y + m[5]) / w
    if not (math.isfinite(mx) and math.isfinite(my)):
        return None
    return float(mx), float(my)
