"""
Geometry kernel: areas and overlaps of claim boundaries.

Pure functions, no I/O, deterministic for identical inputs.

Strategy:
  1. Project geodetic vertices onto a local plane (metres-per-degree at a
     reference latitude, ellipsoid series).
  2. Shoelace formula for areas.
  3. Intersections by signed fan-triangle decomposition: every polygon is a
     signed sum of triangles fanned from its first vertex, so the overlap of
     two polygons is the signed sum of triangle-pair overlaps. Each pair of
     convex triangles is clipped with Sutherland-Hodgman. Exact for any
     simple polygon, convex or not.

Both polygons of a pair share one projection frame, so ratios (IoU, overlap
percentage) do not depend on where each boundary happens to sit.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from .exceptions import InvalidGeometry
from .models import Boundary, Coordinate

Point = tuple[float, float]  # Projected (x, y) in metres

# Relative tolerance under which an intersection is snapped to the smaller area
_SNAP_TOLERANCE = 1e-9


# ─── Data Structures ────────────────────────────────────────────────


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned extent in degrees."""

    min_lat: float
    min_lng: float
    max_lat: float
    max_lng: float

    def intersects(self, other: "BoundingBox") -> bool:
        return not (
            self.max_lat <= other.min_lat
            or other.max_lat <= self.min_lat
            or self.max_lng <= other.min_lng
            or other.max_lng <= self.min_lng
        )


@dataclass(frozen=True)
class Overlap:
    """Every overlap metric of one boundary pair, computed in a shared frame."""

    area_a: float
    area_b: float
    intersection: float

    @property
    def union(self) -> float:
        return self.area_a + self.area_b - self.intersection

    @property
    def iou(self) -> float:
        union = self.union
        return self.intersection / union if union > 0 else 0.0

    @property
    def overlap_pct(self) -> float:
        """Intersection as a percentage of the smaller polygon."""
        smaller = min(self.area_a, self.area_b)
        return self.intersection / smaller * 100.0 if smaller > 0 else 0.0


# ─── Public API ──────────────────────────────────────────────────────


def area(boundary: Boundary) -> float:
    """Polygon area in square metres (>= 0)."""
    vertices = _vertices(boundary)
    ref_lat, ref_lng = _reference(vertices)
    return abs(_shoelace(_project(vertices, ref_lat, ref_lng)))


def intersection_area(a: Boundary, b: Boundary) -> float:
    """Area shared by two boundaries in square metres; 0 when disjoint."""
    return measure_overlap(a, b).intersection


def union_area(a: Boundary, b: Boundary) -> float:
    return measure_overlap(a, b).union


def iou(a: Boundary, b: Boundary) -> float:
    """Intersection over union, in [0, 1]."""
    return measure_overlap(a, b).iou


def overlap_pct(a: Boundary, b: Boundary) -> float:
    """Intersection as a percentage of the smaller boundary, in [0, 100]."""
    return measure_overlap(a, b).overlap_pct


def measure_overlap(a: Boundary, b: Boundary) -> Overlap:
    """Compute areas and intersection of a pair in one shared projection.

    Raises:
        InvalidGeometry: if either boundary is malformed.
    """
    verts_a = _vertices(a)
    verts_b = _vertices(b)
    ref_lat, ref_lng = _reference(verts_a + verts_b)
    proj_a = _project(verts_a, ref_lat, ref_lng)
    proj_b = _project(verts_b, ref_lat, ref_lng)
    area_a = abs(_shoelace(proj_a))
    area_b = abs(_shoelace(proj_b))

    if not _bbox_of(verts_a).intersects(_bbox_of(verts_b)):
        return Overlap(area_a=area_a, area_b=area_b, intersection=0.0)

    shared = abs(_signed_intersection(proj_a, proj_b))
    smaller = min(area_a, area_b)
    if shared > smaller * (1.0 - _SNAP_TOLERANCE):
        shared = smaller
    return Overlap(area_a=area_a, area_b=area_b, intersection=shared)


def centroid(boundary: Boundary) -> Coordinate:
    """Area-weighted centroid; vertex mean for a zero-area ring."""
    vertices = _vertices(boundary)
    ref_lat, ref_lng = _reference(vertices)
    projected = _project(vertices, ref_lat, ref_lng)
    signed = _shoelace(projected)
    if signed == 0:
        return Coordinate(lat=ref_lat, lng=ref_lng)

    cx = cy = 0.0
    n = len(projected)
    for i in range(n):
        x0, y0 = projected[i]
        x1, y1 = projected[(i + 1) % n]
        cross = x0 * y1 - x1 * y0
        cx += (x0 + x1) * cross
        cy += (y0 + y1) * cross
    cx /= 6.0 * signed
    cy /= 6.0 * signed

    m_lat, m_lng = _metres_per_degree(ref_lat)
    return Coordinate(lat=ref_lat + cy / m_lat, lng=ref_lng + cx / m_lng)


def bounding_box(boundary: Boundary) -> BoundingBox:
    return _bbox_of(_vertices(boundary))


def validate(boundary: Boundary) -> None:
    """Raise InvalidGeometry if the boundary cannot be measured."""
    _vertices(boundary)


# ─── Projection ─────────────────────────────────────────────────────


def _vertices(boundary: Boundary) -> list[tuple[float, float]]:
    """Validated (lat, lng) ring without the closing duplicate."""
    points = boundary.points()
    for lat, lng in points:
        if not (math.isfinite(lat) and math.isfinite(lng)):
            raise InvalidGeometry(
                "Boundary contains a non-finite coordinate",
                {"lat": lat, "lng": lng},
            )
    if len(points) > 1 and points[0] == points[-1]:
        points = points[:-1]
    if len(set(points)) < 3:
        raise InvalidGeometry(
            "Boundary needs at least 3 distinct vertices",
            {"distinct_vertices": len(set(points))},
        )
    return points


def _reference(vertices: list[tuple[float, float]]) -> tuple[float, float]:
    n = len(vertices)
    return sum(v[0] for v in vertices) / n, sum(v[1] for v in vertices) / n


def _metres_per_degree(lat: float) -> tuple[float, float]:
    """Length of one degree of latitude and of longitude at ``lat``."""
    phi = math.radians(lat)
    m_per_deg_lat = 111132.92 - 559.82 * math.cos(2 * phi) + 1.175 * math.cos(4 * phi)
    m_per_deg_lng = 111412.84 * math.cos(phi) - 93.5 * math.cos(3 * phi)
    return m_per_deg_lat, m_per_deg_lng


def _project(
    vertices: list[tuple[float, float]], ref_lat: float, ref_lng: float
) -> list[Point]:
    m_lat, m_lng = _metres_per_degree(ref_lat)
    return [((lng - ref_lng) * m_lng, (lat - ref_lat) * m_lat) for lat, lng in vertices]


def _bbox_of(vertices: list[tuple[float, float]]) -> BoundingBox:
    lats = [v[0] for v in vertices]
    lngs = [v[1] for v in vertices]
    return BoundingBox(min(lats), min(lngs), max(lats), max(lngs))


# ─── Planar Primitives ──────────────────────────────────────────────


def _shoelace(points: list[Point]) -> float:
    """Signed area: positive for counter-clockwise rings."""
    total = 0.0
    n = len(points)
    for i in range(n):
        x0, y0 = points[i]
        x1, y1 = points[(i + 1) % n]
        total += x0 * y1 - x1 * y0
    return total / 2.0


def _fan(points: list[Point]) -> list[tuple[list[Point], float]]:
    """Fan triangles from the first vertex as (ccw_triangle, sign) pairs."""
    triangles: list[tuple[list[Point], float]] = []
    origin = points[0]
    for i in range(1, len(points) - 1):
        tri = [origin, points[i], points[i + 1]]
        signed = _shoelace(tri)
        if signed == 0:
            continue
        if signed < 0:
            triangles.append(([tri[0], tri[2], tri[1]], -1.0))
        else:
            triangles.append((tri, 1.0))
    return triangles


def _signed_intersection(a: list[Point], b: list[Point]) -> float:
    total = 0.0
    fan_b = [(tri, sign, _extent(tri)) for tri, sign in _fan(b)]
    for tri_a, sign_a in _fan(a):
        extent_a = _extent(tri_a)
        for tri_b, sign_b, extent_b in fan_b:
            if not _extents_overlap(extent_a, extent_b):
                continue
            clipped = _clip(tri_a, tri_b)
            if len(clipped) >= 3:
                total += sign_a * sign_b * abs(_shoelace(clipped))
    return total


def _extent(points: list[Point]) -> tuple[float, float, float, float]:
    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    return min(xs), min(ys), max(xs), max(ys)


def _extents_overlap(
    a: tuple[float, float, float, float], b: tuple[float, float, float, float]
) -> bool:
    return a[0] < b[2] and b[0] < a[2] and a[1] < b[3] and b[1] < a[3]


def _side(a: Point, b: Point, p: Point) -> float:
    """> 0 when p lies left of the directed edge a -> b."""
    return (b[0] - a[0]) * (p[1] - a[1]) - (b[1] - a[1]) * (p[0] - a[0])


def _clip(subject: list[Point], clip: list[Point]) -> list[Point]:
    """Sutherland-Hodgman: clip ``subject`` by the convex ccw polygon ``clip``."""
    output = list(subject)
    n = len(clip)
    for i in range(n):
        if not output:
            break
        edge_start, edge_end = clip[i], clip[(i + 1) % n]
        candidates = output
        output = []
        prev = candidates[-1]
        prev_side = _side(edge_start, edge_end, prev)
        for current in candidates:
            cur_side = _side(edge_start, edge_end, current)
            if cur_side >= 0:
                if prev_side < 0:
                    output.append(_crossing(prev, current, prev_side, cur_side))
                output.append(current)
            elif prev_side >= 0:
                output.append(_crossing(prev, current, prev_side, cur_side))
            prev, prev_side = current, cur_side
    return output


def _crossing(p: Point, q: Point, side_p: float, side_q: float) -> Point:
    t = side_p / (side_p - side_q)
    return p[0] + t * (q[0] - p[0]), p[1] + t * (q[1] - p[1])
