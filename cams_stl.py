#!/usr/bin/env python3
"""
cams_stl.py

Turns a closed 2D drawing path into a pair of cam plates for a two-arm
drawing mechanism, and writes each cam as a 3D-printable STL.

- Two pivots sit left and right of the path; each carries one cam.
- Every path sample is solved through the two-link arm into a point on the
  cam surface, the cam turning one revolution per traced loop.
- The cam outline is resampled, extruded to a fixed thickness and exported.

Dependencies:
  pip install numpy shapely trimesh mapbox_earcut
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import math
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import trimesh
import mapbox_earcut as earcut
from shapely.geometry import MultiPoint, Point, Polygon

logger = logging.getLogger(__name__)

Coordinate = Tuple[float, float]

# Defaults of the reference star job; physical units are micrometres.
DEFAULT_INTERPOLATION = 5
DEFAULT_X_SCALE = 0.045
DEFAULT_Y_SCALE = 0.045
DEFAULT_PROXIMAL_LEN = 43500.0
DEFAULT_DISTAL_LEN = 32300.0
DEFAULT_SCALE = 7060.0
DEFAULT_THICKNESS = 5000.0


# ----------------------------
# Errors
# ----------------------------

class CamError(RuntimeError):
    pass


class UnreachableTargetError(CamError):
    def __init__(self, target: Coordinate, pivot: Coordinate, distance: float,
                 reach: Tuple[float, float]):
        self.target = target
        self.pivot = pivot
        self.distance = distance
        self.reach = reach
        super().__init__(
            f"Target {target} is out of reach from pivot {pivot}: "
            f"distance {distance:.3f} not in [{reach[0]:.3f}, {reach[1]:.3f}]"
        )


class DegenerateProfileError(CamError):
    pass


class CamIOError(CamError):
    def __init__(self, message: str, path=None):
        self.path = path
        super().__init__(message)


# ----------------------------
# CSV coordinates
# ----------------------------

def read_coords_csv(path) -> List[Coordinate]:
    """
    Read an ordered path from CSV: one point per row, x and y in the first
    two columns. The first row that is not blank or a # comment may be a
    non-numeric header.
    """
    coords: List[Coordinate] = []
    first = True
    try:
        with open(path, newline="", encoding="utf-8") as f:
            for lineno, row in enumerate(csv.reader(f), start=1):
                if not row or not "".join(row).strip() or row[0].lstrip().startswith("#"):
                    continue
                header_candidate, first = first, False
                try:
                    if len(row) < 2:
                        raise ValueError("expected at least two columns")
                    coords.append((float(row[0]), float(row[1])))
                except ValueError as e:
                    if header_candidate:
                        continue  # header
                    raise CamIOError(f"{path}:{lineno}: bad coordinate row {row!r} ({e})", path) from e
    except OSError as e:
        raise CamIOError(f"Cannot read coordinates from {path}: {e}", path) from e

    if len(coords) < 2:
        raise CamIOError(f"{path}: a path needs at least 2 points, got {len(coords)}", path)
    logger.debug("Read %d coordinates from %s", len(coords), path)
    return coords


def write_coords_csv(coords: Sequence[Coordinate], path) -> None:
    try:
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(["x", "y"])
            for x, y in coords:
                writer.writerow([repr(float(x)), repr(float(y))])
    except OSError as e:
        raise CamIOError(f"Cannot write coordinates to {path}: {e}", path) from e


# ----------------------------
# Resampling
# ----------------------------

def scale_coords(points: Sequence[Coordinate], x_factor: float, y_factor: float) -> List[Coordinate]:
    return [(x * x_factor, y * y_factor) for x, y in points]


def interpolate(points: Sequence[Coordinate], n: int) -> List[Coordinate]:
    """
    Split every segment of the closed loop into `n` equal steps, closing
    segment (last -> first) included and emitted last. n=2 adds midpoints,
    n <= 1 returns the points unchanged.
    """
    if n < 0:
        raise ValueError(f"Interpolation count must be non-negative, got {n}")
    pts = [(float(x), float(y)) for x, y in points]
    if n <= 1 or len(pts) < 2:
        return pts

    out: List[Coordinate] = []
    count = len(pts)
    for i in range(count):
        x0, y0 = pts[i]
        x1, y1 = pts[(i + 1) % count]
        out.append((x0, y0))
        for k in range(1, n):
            out.append((x0 + (x1 - x0) * k / n, y0 + (y1 - y0) * k / n))
    return out


# ----------------------------
# Linkage
# ----------------------------

class Branch(Enum):
    PRIMARY = "primary"
    ALTERNATE = "alternate"

    @classmethod
    def select(cls, use_alt: bool) -> "Branch":
        return cls.ALTERNATE if use_alt else cls.PRIMARY

    @property
    def sign(self) -> float:
        return 1.0 if self is Branch.ALTERNATE else -1.0


@dataclass(frozen=True)
class CamCoordinate:
    angle: float  # radians, cam frame
    radius: float

    @property
    def x(self) -> float:
        return self.radius * math.cos(self.angle)

    @property
    def y(self) -> float:
        return self.radius * math.sin(self.angle)

    def as_xy(self) -> Coordinate:
        return (self.x, self.y)

    def rotated(self, delta: float) -> "CamCoordinate":
        return CamCoordinate(self.angle + delta, self.radius)


def convert_coord(target: Coordinate, pivot: Coordinate, proximal_len: float,
                  distal_len: float, scale: float = 1.0,
                  branch: Branch = Branch.PRIMARY) -> CamCoordinate:
    """
    Solve the two-link arm rooted at `pivot` for a path point and return the
    follower contact on the cam surface, in the cam's own frame.

    `target` is in path units and is scaled into physical units first; the
    pivot and link lengths are already physical.
    """
    if isinstance(branch, bool):
        branch = Branch.select(branch)
    tx = target[0] * scale - pivot[0]
    ty = target[1] * scale - pivot[1]
    d = math.hypot(tx, ty)

    lo = abs(proximal_len - distal_len)
    hi = proximal_len + distal_len
    if d == 0.0 or d < lo or d > hi:
        raise UnreachableTargetError(tuple(target), tuple(pivot), d, (lo, hi))

    bearing = math.atan2(ty, tx)
    cos_shoulder = (proximal_len ** 2 + d ** 2 - distal_len ** 2) / (2.0 * proximal_len * d)
    shoulder = math.acos(max(-1.0, min(1.0, cos_shoulder)))

    # angle convention of the cam frame
    angle = math.pi + bearing / 2.0 + branch.sign * shoulder
    radius = d - scale
    if radius <= 0.0:
        raise UnreachableTargetError(tuple(target), tuple(pivot), d, (max(lo, scale), hi))
    return CamCoordinate(angle, radius)


def get_cam_centers(path: Sequence[Coordinate], scale: float, proximal_len: float,
                    distal_len: float) -> Tuple[Coordinate, Coordinate]:
    """
    Place the two cam pivots a proximal link apart, mirrored about x=0, and
    low enough that the path's vertical centre sits at mean arm reach.
    """
    if len(path) == 0:
        raise ValueError("Cannot place cam centres for an empty path.")
    _, miny, _, maxy = MultiPoint([(float(x), float(y)) for x, y in path]).bounds

    half_span = proximal_len / 2.0
    reach = (proximal_len + distal_len) / 2.0
    drop = math.sqrt(reach ** 2 - half_span ** 2)
    y = scale * (miny + maxy) / 2.0 - drop

    left, right = (-half_span, y), (half_span, y)
    logger.debug("Cam centres: left=%s right=%s", left, right)
    return left, right


# ----------------------------
# Cam solid
# ----------------------------

def _ring_area(coords) -> float:
    pts = np.asarray(coords, dtype=np.float64)
    x = pts[:, 0]
    y = pts[:, 1]
    return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))


def _tri_area(a, b, c) -> float:
    return (b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0])


def _cam_ring(profile: Sequence[Coordinate]) -> np.ndarray:
    pts = [(float(x), float(y)) for x, y in profile]
    if len(pts) > 1 and pts[0] == pts[-1]:
        pts = pts[:-1]
    if len(pts) < 3:
        raise DegenerateProfileError(f"A cam profile needs at least 3 points, got {len(pts)}")

    ring = np.asarray(pts, dtype=np.float64)
    area = _ring_area(ring)
    if abs(area) < 1e-12:
        raise DegenerateProfileError("Cam profile encloses no area.")
    if not Polygon(ring).is_valid:
        raise DegenerateProfileError("Cam profile crosses itself.")
    if area < 0:
        ring = ring[::-1]
    return np.ascontiguousarray(ring)


def _fan_cap(ring: np.ndarray):
    """
    Fan the cap from the rotation axis (or the centroid when the outline
    does not surround it). Returns None unless every fan triangle is CCW.
    """
    poly = Polygon(ring)
    if poly.contains(Point(0.0, 0.0)):
        hub = np.zeros(2, dtype=np.float64)
    else:
        c = poly.centroid
        hub = np.array([c.x, c.y], dtype=np.float64)

    n = ring.shape[0]
    for i in range(n):
        if _tri_area(hub, ring[i], ring[(i + 1) % n]) <= 0:
            return None
    idx = np.arange(n, dtype=np.int64)
    faces = np.column_stack([np.full(n, n), idx, (idx + 1) % n])
    return [hub], faces


def _earcut_cap(ring: np.ndarray):
    n = ring.shape[0]
    tri = earcut.triangulate_float64(ring, np.asarray([n], dtype=np.uint32))
    tri = np.asarray(tri, dtype=np.int64).reshape(-1, 3)
    if tri.shape[0] == 0:
        raise DegenerateProfileError("Cam profile could not be triangulated.")

    # earcut may skip collinear vertices; splice them back into the triangle
    # whose edge spans them
    used = np.zeros(n, dtype=bool)
    used[tri.ravel()] = True

    extra = []
    faces = []
    for a, b, c in tri:
        if _tri_area(ring[a], ring[b], ring[c]) < 0:
            b, c = c, b
        loop = []
        for p, q in ((a, b), (b, c), (c, a)):
            loop.append(p)
            between = []
            k = (p + 1) % n
            while k != q and not used[k]:
                between.append(k)
                k = (k + 1) % n
            if k == q:
                loop.extend(between)

        if len(loop) == 3:
            faces.append([a, b, c])
            continue
        hub = n + len(extra)
        extra.append(ring[[a, b, c]].mean(axis=0))
        for i in range(len(loop)):
            faces.append([hub, loop[i], loop[(i + 1) % len(loop)]])

    return extra, np.asarray(faces, dtype=np.int64)


def build_cam_mesh(profile: Sequence[Coordinate], thickness: float = DEFAULT_THICKNESS) -> trimesh.Trimesh:
    """
    Extrude a cam outline into a closed prism from z=0 to z=thickness.

    Caps are fanned from the rotation axis when the outline is star-shaped
    about it (or about its centroid); other outlines are ear-clipped.
    """
    if thickness <= 0:
        raise ValueError(f"Cam thickness must be positive, got {thickness}")

    ring = _cam_ring(profile)
    n = ring.shape[0]

    cap = _fan_cap(ring)
    if cap is None:
        cap = _earcut_cap(ring)
    extra, cap_faces = cap

    verts2d = np.vstack([ring] + [np.asarray(extra, dtype=np.float64).reshape(-1, 2)])
    m = verts2d.shape[0]
    bottom = np.column_stack([verts2d, np.zeros((m, 1), dtype=np.float64)])
    top = np.column_stack([verts2d, np.full((m, 1), float(thickness), dtype=np.float64)])
    vertices = np.vstack([bottom, top])

    idx = np.arange(n, dtype=np.int64)
    nxt = (idx + 1) % n
    bottom_faces = cap_faces[:, ::-1]
    top_faces = cap_faces + m
    side_faces = np.stack([
        np.column_stack([idx, nxt, nxt + m]),
        np.column_stack([idx, nxt + m, idx + m]),
    ], axis=1).reshape(-1, 3)

    faces = np.vstack([bottom_faces, top_faces, side_faces]).astype(np.int64)
    return trimesh.Trimesh(vertices=vertices, faces=faces, process=False)


def write_mesh(mesh: trimesh.Trimesh, path) -> None:
    out_path = Path(path)
    data = mesh.export(file_type="stl")
    try:
        out_path.write_bytes(data)
    except OSError as e:
        raise CamIOError(f"Cannot write STL to {out_path}: {e}", out_path) from e
    logger.info("Wrote %d triangles to %s", len(mesh.faces), out_path)


def write_cam(profile: Sequence[Coordinate], output_path, thickness: float = DEFAULT_THICKNESS) -> trimesh.Trimesh:
    mesh = build_cam_mesh(profile, thickness=thickness)
    write_mesh(mesh, output_path)
    return mesh


def write_svg(profile: Sequence[Coordinate], path) -> None:
    ring = _cam_ring(profile)
    minx, miny = ring.min(axis=0)
    maxx, maxy = ring.max(axis=0)
    w = maxx - minx
    h = maxy - miny

    d = f"M {ring[0][0]-minx:.3f} {maxy-ring[0][1]:.3f} "
    for x, y in ring[1:]:
        d += f"L {x-minx:.3f} {maxy-y:.3f} "
    d += "Z"

    svg = f"""<svg xmlns="http://www.w3.org/2000/svg" width="{w:.3f}" height="{h:.3f}" viewBox="0 0 {w:.3f} {h:.3f}">
  <path d="{d}" fill="black" />
  <circle cx="{-minx:.3f}" cy="{maxy:.3f}" r="{max(w, h) * 0.01:.3f}" fill="white" />
</svg>
"""
    try:
        Path(path).write_text(svg, encoding="utf-8")
    except OSError as e:
        raise CamIOError(f"Cannot write SVG to {path}: {e}", path) from e


# ----------------------------
# Cam generation
# ----------------------------

def build_cam_profile(path: Sequence[Coordinate], pivot: Coordinate, proximal_len: float,
                      distal_len: float, scale: float, branch: Branch, n: int) -> List[Coordinate]:
    count = len(path)
    profile = []
    for i, target in enumerate(path):
        cc = convert_coord(target, pivot, proximal_len, distal_len, scale, branch)
        # one cam revolution per traced loop
        profile.append(cc.rotated(-2.0 * math.pi * i / count).as_xy())
    return interpolate(profile, n)


def create_cams(input_csv, left_output, right_output, n: int = DEFAULT_INTERPOLATION,
                x_scale: float = DEFAULT_X_SCALE, y_scale: float = DEFAULT_Y_SCALE,
                proximal_len: float = DEFAULT_PROXIMAL_LEN, distal_len: float = DEFAULT_DISTAL_LEN,
                scale: float = DEFAULT_SCALE, thickness: float = DEFAULT_THICKNESS,
                debug_dir=None) -> Tuple[trimesh.Trimesh, trimesh.Trimesh]:
    """
    Read a drawing path and write the left and right cam STLs for it.

    Sides are processed left then right; the first error propagates and a
    cam already written stays on disk.
    """
    raw = read_coords_csv(input_csv)
    logger.info("Read %d path points from %s", len(raw), input_csv)
    path = scale_coords(raw, x_scale, y_scale)

    left_pivot, right_pivot = get_cam_centers(path, scale, proximal_len, distal_len)

    meshes = []
    sides = [
        ("left", left_pivot, Branch.PRIMARY, left_output),
        ("right", right_pivot, Branch.ALTERNATE, right_output),
    ]
    for name, pivot, branch, output in sides:
        profile = build_cam_profile(path, pivot, proximal_len, distal_len, scale, branch, n)
        logger.debug("%s cam: %d profile points around pivot %s", name, len(profile), pivot)
        if debug_dir is not None:
            write_coords_csv(profile, Path(debug_dir) / f"{name}_cam_coordinates.csv")
            write_svg(profile, Path(debug_dir) / f"{name}_cam.svg")
        meshes.append(write_cam(profile, output, thickness=thickness))

    return meshes[0], meshes[1]


# ----------------------------
# Job files
# ----------------------------

@dataclass
class CamJob:
    input_csv: str
    left_output: str
    right_output: str
    n: int = DEFAULT_INTERPOLATION
    x_scale: float = DEFAULT_X_SCALE
    y_scale: float = DEFAULT_Y_SCALE
    proximal_len: float = DEFAULT_PROXIMAL_LEN
    distal_len: float = DEFAULT_DISTAL_LEN
    scale: float = DEFAULT_SCALE
    thickness: float = DEFAULT_THICKNESS


def job_from_json(job_path) -> CamJob:
    try:
        data = json.loads(Path(job_path).read_text(encoding="utf-8"))
    except OSError as e:
        raise CamIOError(f"Cannot read job file {job_path}: {e}", job_path) from e
    if not isinstance(data, dict):
        raise ValueError("Job JSON must be an object of cam job parameters.")

    known = {f.name for f in fields(CamJob)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown job parameters: {', '.join(unknown)}")
    missing = [k for k in ("input_csv", "left_output", "right_output") if k not in data]
    if missing:
        raise ValueError(f"Missing job parameters: {', '.join(missing)}")

    # relative paths resolve against the job file
    base = Path(job_path).parent
    for key in ("input_csv", "left_output", "right_output"):
        data[key] = str(base / data[key])
    data["n"] = int(data.get("n", DEFAULT_INTERPOLATION))
    return CamJob(**data)


def run_job(job: CamJob, debug_dir=None) -> Tuple[trimesh.Trimesh, trimesh.Trimesh]:
    return create_cams(
        job.input_csv,
        job.left_output,
        job.right_output,
        n=job.n,
        x_scale=job.x_scale,
        y_scale=job.y_scale,
        proximal_len=job.proximal_len,
        distal_len=job.distal_len,
        scale=job.scale,
        thickness=job.thickness,
        debug_dir=debug_dir,
    )


# ----------------------------
# CLI
# ----------------------------

def parse_args(argv: Optional[Sequence[str]] = None):
    p = argparse.ArgumentParser(description="Convert a closed drawing path into a pair of cam STLs.")
    group = p.add_mutually_exclusive_group(required=True)
    group.add_argument("--input", type=str, help="CSV of path points (x,y per row).")
    group.add_argument("--job", type=str, help="Path to JSON job file with all cam parameters.")

    p.add_argument("--left-out", type=str, default=None, help="Output STL for the left cam.")
    p.add_argument("--right-out", type=str, default=None, help="Output STL for the right cam.")

    # Resampling
    p.add_argument("--interpolate", type=int, default=DEFAULT_INTERPOLATION,
                   help="Sub-steps per profile segment (<= 1 keeps the samples as is).")
    p.add_argument("--x-scale", type=float, default=DEFAULT_X_SCALE, help="Scale applied to path x.")
    p.add_argument("--y-scale", type=float, default=DEFAULT_Y_SCALE, help="Scale applied to path y.")

    # Mechanism
    p.add_argument("--proximal", type=float, default=DEFAULT_PROXIMAL_LEN, help="Proximal link length.")
    p.add_argument("--distal", type=float, default=DEFAULT_DISTAL_LEN, help="Distal link length.")
    p.add_argument("--scale", type=float, default=DEFAULT_SCALE,
                   help="Physical units per (scaled) path unit.")
    p.add_argument("--thickness", type=float, default=DEFAULT_THICKNESS, help="Cam plate thickness.")

    # Output / debug
    p.add_argument("--debug-dir", type=str, default=None,
                   help="Directory for cam outline SVGs and cam coordinate CSVs.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")

    args = p.parse_args(argv)
    if args.input and not (args.left_out and args.right_out):
        p.error("--left-out and --right-out are required with --input")
    return args


def main(argv: Optional[Sequence[str]] = None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")

    try:
        if args.job:
            job = job_from_json(args.job)
        else:
            job = CamJob(
                input_csv=args.input,
                left_output=args.left_out,
                right_output=args.right_out,
                n=args.interpolate,
                x_scale=args.x_scale,
                y_scale=args.y_scale,
                proximal_len=args.proximal,
                distal_len=args.distal,
                scale=args.scale,
                thickness=args.thickness,
            )
    except ValueError as e:
        raise SystemExit(f"Bad job: {e}")
    except CamError as e:
        raise SystemExit(str(e))

    for out in (job.left_output, job.right_output):
        Path(out).parent.mkdir(parents=True, exist_ok=True)
    if args.debug_dir:
        Path(args.debug_dir).mkdir(parents=True, exist_ok=True)

    try:
        left, right = run_job(job, debug_dir=args.debug_dir)
    except CamError as e:
        raise SystemExit(str(e))

    if args.debug_dir:
        print(f"Wrote debug outlines: {Path(args.debug_dir).resolve()}")
    for name, mesh, out in (("left", left, job.left_output), ("right", right, job.right_output)):
        print(f"Wrote STL ({name}): {Path(out).resolve()}")
        print(f"Extents: {mesh.extents}")


if __name__ == "__main__":
    main()
