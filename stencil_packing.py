#!/usr/bin/env python3

"""
stencil_packing.py

Core of the stencil packer: turns a binary raster mask into a list of
fixed-diameter tool positions that never overlap and never leave the mask.

Pipeline:
  1. :func:`rasterize` binarizes the source image against a background colour
     into a supersampled label :class:`Grid`.
  2. :class:`ComponentExtractor` labels the grid into 4-connected
     components, one at a time.
  3. :func:`search_component` sweeps lattice offsets for the square and
     triangular packings and keeps the offset that fits the most circles.
  4. :func:`pack_grid` concatenates each component's winning placements.

The public entry point is :func:`pack_image`.
"""

from __future__ import annotations
import math
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from itertools import count
from typing import Any, Dict, Iterator, List, Optional, Tuple

import cv2
import numpy as np

# =========================
# Configurable constants
# =========================
# Offset steps per lattice axis when searching a single component
DEFAULT_SHIFT_STEPS = 32

# Default supersampling factor (subcells per source pixel, per axis)
DEFAULT_SUPERSAMPLE = 1

SQRT3 = math.sqrt(3.0)


# =========================
# Errors
# =========================
class StencilPackingError(RuntimeError):
    """Base class for every failure raised by the stencil packer."""


class InvalidConfiguration(StencilPackingError, ValueError):
    """A configuration value is missing, unknown or out of range."""

    def __init__(self, parameter: str, message: str):
        super().__init__(f"Invalid configuration for {parameter}: {message}")
        self.parameter = parameter


class MalformedInput(StencilPackingError, ValueError):
    """The source image cannot be binarized."""


class InternalInvariantError(StencilPackingError):
    """The grid was accessed outside the bounds the search computed for it."""


# =========================
# Utility helpers
# =========================
def announce(step: str, inputs: Dict[str, Any]):
    """
    Log a structured event to stdout for debugging and automation.
    States the step name and its minimal inputs before significant calls.
    """
    print(f"[STEP] {step} | inputs: " + ", ".join(f"{k}={v}" for k, v in inputs.items()))


def ensure_bool(cond: bool, msg: str, exc: type = InternalInvariantError):
    if not cond:
        raise exc(msg)


# =========================
# Data model
# =========================
class Label(IntEnum):
    """Per-cell state of the working grid."""
    BACKGROUND = 0
    UNCLAIMED = 1
    IN_COMPONENT = 2
    CLAIMED = 3


class BackgroundColor(Enum):
    BLACK = "black"
    WHITE = "white"

    @classmethod
    def parse(cls, value: Any) -> "BackgroundColor":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            names = ", ".join(c.value for c in cls)
            raise InvalidConfiguration("background", f"unknown color {value!r} (expected one of: {names})") from None


class LatticeFamily(Enum):
    # Declaration order is the tie-break order of the search.
    TRIANGULAR = "triangular"
    SQUARE = "square"


@dataclass(frozen=True)
class PackingConfig:
    """
    Immutable packing parameters, validated once at construction.

    Args:
        pixel_size: Physical size of one source pixel side (mm).
        tool_diameter: Tool diameter (mm).
        background: Background colour, a :class:`BackgroundColor` or its name.
        supersample: Subcells per source pixel along each axis.
        shift_steps: Offset steps per lattice axis tried for each component.
    """
    pixel_size: float
    tool_diameter: float
    background: BackgroundColor = BackgroundColor.WHITE
    supersample: int = DEFAULT_SUPERSAMPLE
    shift_steps: int = DEFAULT_SHIFT_STEPS

    def __post_init__(self):
        object.__setattr__(self, "background", BackgroundColor.parse(self.background))
        self.validate()

    def validate(self):
        for name in ("pixel_size", "tool_diameter"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                raise InvalidConfiguration(name, f"must be a positive number, got {value!r}")
        for name in ("supersample", "shift_steps"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise InvalidConfiguration(name, f"must be an integer >= 1, got {value!r}")

    @property
    def radius(self) -> float:
        return self.tool_diameter / 2.0

    @property
    def cell_size(self) -> float:
        """Physical side of one grid cell (mm)."""
        return self.pixel_size / self.supersample


@dataclass
class Grid:
    """Label array of shape (rows, cols) plus the physical side of a cell."""
    labels: np.ndarray
    cell_size: float

    @property
    def rows(self) -> int:
        return int(self.labels.shape[0])

    @property
    def cols(self) -> int:
        return int(self.labels.shape[1])

    @property
    def width(self) -> float:
        return self.cols * self.cell_size

    @property
    def height(self) -> float:
        return self.rows * self.cell_size

    def count(self, label: Label) -> int:
        return int(np.count_nonzero(self.labels == label))


@dataclass(frozen=True)
class BoundingBox:
    """Inclusive min/max cell coordinates."""
    x_min: int
    y_min: int
    x_max: int
    y_max: int

    @property
    def width(self) -> int:
        return self.x_max - self.x_min + 1

    @property
    def height(self) -> int:
        return self.y_max - self.y_min + 1


@dataclass(frozen=True)
class Component:
    index: int
    bbox: BoundingBox
    pixel_count: int
    seed: Tuple[int, int]  # (row, col) of the first cell found


@dataclass(frozen=True)
class LatticePoint:
    row: int
    col: int
    x: float
    y: float


@dataclass(frozen=True)
class CirclePlacement:
    x: float
    y: float
    radius: float

    @property
    def diameter(self) -> float:
        return 2.0 * self.radius


@dataclass(frozen=True)
class SearchResult:
    component: Component
    family: LatticeFamily
    offset: Tuple[float, float]
    placements: Tuple[CirclePlacement, ...]
    trial_index: int

    @property
    def count(self) -> int:
        return len(self.placements)


@dataclass(frozen=True)
class PackingResult:
    grid: Grid
    components: Tuple[SearchResult, ...]
    placements: Tuple[CirclePlacement, ...] = field(default=())


# =========================
# Rasterizer
# =========================
def rasterize(image: np.ndarray,
              background: Any,
              supersample: int = DEFAULT_SUPERSAMPLE,
              pixel_size: float = 1.0) -> Grid:
    """
    Binarize ``image`` against ``background`` into a supersampled label grid.

    Cell (X, Y) of the output samples source pixel (X // n, Y // n) and is
    BACKGROUND when every colour channel equals the background exactly,
    UNCLAIMED otherwise. Accepts gray (H x W), BGR or BGRA images of any
    unsigned integer dtype; alpha is premultiplied before the comparison.
    """
    bg = BackgroundColor.parse(background)
    if isinstance(supersample, bool) or not isinstance(supersample, int) or supersample < 1:
        raise InvalidConfiguration("supersample", f"must be an integer >= 1, got {supersample!r}")

    img = np.asarray(image)
    ensure_bool(img.ndim in (2, 3), f"Image must be 2-D or 3-D, got shape {img.shape}.", MalformedInput)
    ensure_bool(img.shape[0] > 0 and img.shape[1] > 0, f"Image has zero size: {img.shape}.", MalformedInput)
    ensure_bool(np.issubdtype(img.dtype, np.unsignedinteger),
                f"Image dtype {img.dtype} has no black/white channel values.", MalformedInput)
    if img.ndim == 2:
        img = img[:, :, None]
    channels = img.shape[2]
    ensure_bool(channels in (1, 3, 4), f"Unsupported channel count: {channels}.", MalformedInput)

    top = int(np.iinfo(img.dtype).max)
    colour = img[:, :, :3] if channels >= 3 else img
    if channels == 4:
        alpha = img[:, :, 3:4].astype(np.uint64)
        colour = colour.astype(np.uint64) * alpha // top

    bg_value = 0 if bg is BackgroundColor.BLACK else top
    is_bg = np.all(colour == bg_value, axis=2)

    n = supersample
    if n > 1:
        is_bg = np.repeat(np.repeat(is_bg, n, axis=0), n, axis=1)
    labels = np.where(is_bg, Label.BACKGROUND, Label.UNCLAIMED).astype(np.uint8)
    return Grid(labels=np.ascontiguousarray(labels), cell_size=float(pixel_size) / n)


# =========================
# Component extraction
# =========================
def label_components(labels: np.ndarray) -> Tuple[np.ndarray, np.ndarray, List[Tuple[int, int]]]:
    """
    Label the 4-connected UNCLAIMED regions of ``labels`` with OpenCV.

    Returns the label map, the per-label stats and a list of
    (flat index of first cell, label id) sorted in row-major order of the
    first cell.
    """
    unclaimed = (labels == Label.UNCLAIMED).astype(np.uint8)
    num_labels, label_map, stats, _ = cv2.connectedComponentsWithStats(
        unclaimed, connectivity=4, ltype=cv2.CV_32S
    )
    cols = labels.shape[1]
    seeds = []
    for label_id in range(1, num_labels):
        x = int(stats[label_id, cv2.CC_STAT_LEFT])
        y = int(stats[label_id, cv2.CC_STAT_TOP])
        w = int(stats[label_id, cv2.CC_STAT_WIDTH])
        # the first cell sits on the component's top row
        first_col = x + int(np.argmax(label_map[y, x:x + w] == label_id))
        seeds.append((y * cols + first_col, label_id))
    seeds.sort()
    return label_map, stats, seeds


class ComponentExtractor:
    """
    Splits a grid into 4-connected foreground components, in row-major order
    of their first cell.

    The grid is labelled once, on the first call to :meth:`extract_next`.
    The component it returns stays labelled IN_COMPONENT until :meth:`claim`
    is called (or the next component is requested), so the packing search
    can test circles against it.
    """

    def __init__(self, grid: Grid):
        self.grid = grid
        self._found = 0
        self._label_map: Optional[np.ndarray] = None
        self._stats: Optional[np.ndarray] = None
        self._seeds: Optional[List[Tuple[int, int]]] = None
        self._pending: Optional[Tuple[Tuple[slice, slice], np.ndarray]] = None

    def claim(self):
        """Relabel the pending component's cells to CLAIMED."""
        if self._pending is None:
            return
        window, members = self._pending
        self.grid.labels[window][members] = Label.CLAIMED
        self._pending = None

    def extract_next(self) -> Optional[Component]:
        self.claim()
        if self._seeds is None:
            self._label_map, self._stats, self._seeds = label_components(self.grid.labels)
        if self._found >= len(self._seeds):
            return None

        first, label_id = self._seeds[self._found]
        x = int(self._stats[label_id, cv2.CC_STAT_LEFT])
        y = int(self._stats[label_id, cv2.CC_STAT_TOP])
        w = int(self._stats[label_id, cv2.CC_STAT_WIDTH])
        h = int(self._stats[label_id, cv2.CC_STAT_HEIGHT])
        window = (slice(y, y + h), slice(x, x + w))
        members = self._label_map[window] == label_id

        patch = self.grid.labels[window]
        ensure_bool(bool(np.all(patch[members] == Label.UNCLAIMED)),
                    f"Component {self._found} changed after the grid was labelled.")
        patch[members] = Label.IN_COMPONENT
        self._pending = (window, members)

        component = Component(
            index=self._found,
            bbox=BoundingBox(x_min=x, y_min=y, x_max=x + w - 1, y_max=y + h - 1),
            pixel_count=int(self._stats[label_id, cv2.CC_STAT_AREA]),
            seed=divmod(first, self.grid.cols),
        )
        self._found += 1
        return component

    def iter_components(self) -> Iterator[Component]:
        while True:
            component = self.extract_next()
            if component is None:
                return
            yield component


# =========================
# Lattice enumeration
# =========================
@dataclass(frozen=True)
class SearchBounds:
    """Physical extent of the image plus the window around one component."""
    width: float
    height: float
    x_lo: float
    x_hi: float
    y_lo: float
    y_hi: float

    @classmethod
    def for_component(cls, grid: Grid, bbox: BoundingBox) -> "SearchBounds":
        cell = grid.cell_size
        return cls(
            width=grid.width,
            height=grid.height,
            x_lo=(bbox.x_min - 1) * cell,
            x_hi=(bbox.x_max + 1) * cell,
            y_lo=(bbox.y_min - 1) * cell,
            y_hi=(bbox.y_max + 1) * cell,
        )


def lattice_steps(family: LatticeFamily, diameter: float) -> Tuple[float, float]:
    """(dx, dy) between neighbouring lattice columns and rows."""
    if family is LatticeFamily.SQUARE:
        return diameter, diameter
    return diameter * SQRT3 / 2.0, diameter / 2.0


def _first_index(origin: float, step: float, lower: float) -> int:
    """Smallest i >= 0 with origin + i * step >= lower."""
    i = max(0, math.ceil((lower - origin) / step))
    while i > 0 and origin + (i - 1) * step >= lower:
        i -= 1
    while origin + i * step < lower:
        i += 1
    return i


def enumerate_lattice(family: LatticeFamily,
                      offset: Tuple[float, float],
                      diameter: float,
                      bounds: SearchBounds) -> Iterator[LatticePoint]:
    """
    Lazily yield the lattice points of ``family`` shifted by ``offset`` that
    fall inside both the image and the component window of ``bounds``.

    Square: (ox + i*d, oy + j*d). Triangular: (ox + i*d*sqrt(3)/2, oy + j*d/2)
    with every (i, j) of odd parity dropped. Columns are walked in the outer
    loop.
    """
    ox, oy = offset
    dx, dy = lattice_steps(family, diameter)
    x_end = min(bounds.width, bounds.x_hi)
    y_end = min(bounds.height, bounds.y_hi)
    j_start = _first_index(oy, dy, bounds.y_lo)
    for i in count(_first_index(ox, dx, bounds.x_lo)):
        x = ox + i * dx
        if x >= x_end:
            return
        for j in count(j_start):
            y = oy + j * dy
            if y >= y_end:
                break
            if family is LatticeFamily.TRIANGULAR and (i + j) % 2 == 1:
                continue
            yield LatticePoint(row=j, col=i, x=x, y=y)


# =========================
# Circle fit check
# =========================
def circle_fits(grid: Grid, label: Label, cx: float, cy: float, radius: float) -> bool:
    """
    Check that the disc (cx, cy, radius) lies inside the image, that the cell
    holding its centre carries ``label`` and that every cell whose centre
    falls in the disc does too.
    """
    if cx < radius or cx > grid.width - radius or cy < radius or cy > grid.height - radius:
        return False
    cell = grid.cell_size
    # a disc smaller than a cell may hold no cell centre at all
    home_col = min(int(cx // cell), grid.cols - 1)
    home_row = min(int(cy // cell), grid.rows - 1)
    if grid.labels[home_row, home_col] != label:
        return False

    c0 = math.ceil((cx - radius) / cell - 0.5)
    c1 = math.floor((cx + radius) / cell - 0.5)
    r0 = math.ceil((cy - radius) / cell - 0.5)
    r1 = math.floor((cy + radius) / cell - 0.5)
    ensure_bool(0 <= c0 and c1 < grid.cols and 0 <= r0 and r1 < grid.rows,
                f"Circle ({cx}, {cy}, r={radius}) spans cells [{c0}..{c1}]x[{r0}..{r1}] "
                f"outside a {grid.cols}x{grid.rows} grid.")
    if c1 < c0 or r1 < r0:
        return True

    patch = grid.labels[r0:r1 + 1, c0:c1 + 1]
    xs = (np.arange(c0, c1 + 1) + 0.5) * cell - cx
    ys = (np.arange(r0, r1 + 1) + 0.5) * cell - cy
    inside = ys[:, None] ** 2 + xs[None, :] ** 2 <= radius * radius
    return bool(np.all(patch[inside] == label))


# =========================
# Packing search
# =========================
def lattice_offsets(diameter: float, shift_steps: int) -> Iterator[Tuple[float, float]]:
    """Offsets (i*s, j*s) with s = diameter / shift_steps, i outer, j inner."""
    shift = diameter / float(shift_steps)
    for i in range(shift_steps):
        for j in range(shift_steps):
            yield i * shift, j * shift


def fill_lattice(grid: Grid, bounds: SearchBounds, family: LatticeFamily,
                 offset: Tuple[float, float], config: PackingConfig,
                 label: Label = Label.IN_COMPONENT) -> Tuple[CirclePlacement, ...]:
    """All lattice points of one (family, offset) trial whose disc fits on ``label``."""
    r = config.radius
    return tuple(
        CirclePlacement(x=p.x, y=p.y, radius=r)
        for p in enumerate_lattice(family, offset, config.tool_diameter, bounds)
        if circle_fits(grid, label, p.x, p.y, r)
    )


def search_component(grid: Grid, component: Component, config: PackingConfig) -> SearchResult:
    """
    Try every (offset, family) pair on a component that is currently labelled
    IN_COMPONENT and return the trial with the most placements. Ties go to the
    earliest trial: offsets in (i, j) order, triangular before square.
    """
    bounds = SearchBounds.for_component(grid, component.bbox)
    families = tuple(LatticeFamily)
    trials = (
        SearchResult(
            component=component,
            family=family,
            offset=offset,
            placements=fill_lattice(grid, bounds, family, offset, config),
            trial_index=k * len(families) + f,
        )
        for k, offset in enumerate(lattice_offsets(config.tool_diameter, config.shift_steps))
        for f, family in enumerate(families)
    )
    return max(trials, key=lambda t: (t.count, -t.trial_index))


# =========================
# Aggregation
# =========================
def pack_grid(grid: Grid, config: PackingConfig) -> PackingResult:
    """
    Extract every component of ``grid`` in discovery order, search each one
    and concatenate the winning placements. Mutates ``grid``: every foreground
    cell ends up CLAIMED.
    """
    announce("PACK_GRID", {"cols": grid.cols, "rows": grid.rows,
                           "tool_diameter": config.tool_diameter, "shift_steps": config.shift_steps})
    extractor = ComponentExtractor(grid)
    results: List[SearchResult] = []
    for component in extractor.iter_components():
        best = search_component(grid, component, config)
        print(f"[PACK] component={component.index} pixels={component.pixel_count} "
              f"family={best.family.value} offset=({best.offset[0]:.4f}, {best.offset[1]:.4f}) "
              f"placed={best.count}")
        results.append(best)
    extractor.claim()

    placements = tuple(p for res in results for p in res.placements)
    print(f"[OK] {len(results)} components packed: {len(placements)} circles.")
    return PackingResult(grid=grid, components=tuple(results), placements=placements)


def pack_image(image: np.ndarray, config: PackingConfig) -> PackingResult:
    """Rasterize ``image`` with ``config`` and pack every foreground component."""
    announce("RASTERIZE", {"shape": tuple(np.shape(image)), "background": config.background.value,
                           "supersample": config.supersample})
    grid = rasterize(image, config.background, config.supersample, config.pixel_size)
    return pack_grid(grid, config)
