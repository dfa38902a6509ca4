"""
stencil_gcode.py

G-code emission for packed tool positions: one plunge per circle, with
travel between circles at a safe height.
"""

from __future__ import annotations
import math
import os
from dataclasses import dataclass
from typing import Iterable, List

from stencil_packing import CirclePlacement, InvalidConfiguration

# Decimal places written for X/Y, Z and feed words
XY_DECIMALS = 4
Z_DECIMALS = 3
FEED_DECIMALS = 1


@dataclass(frozen=True)
class MillingProfile:
    """
    Machine parameters for milling each circle.

    Args:
        mill_depth: Depth below the work surface to plunge to (mm, positive).
        safe_height: Height above the work surface for travel moves (mm).
        mill_rate: Plunge feed rate (mm/min).
        travel_rate: Travel feed rate (mm/min).
    """
    mill_depth: float
    safe_height: float
    mill_rate: float
    travel_rate: float

    def __post_init__(self):
        for name in ("mill_depth", "safe_height", "mill_rate", "travel_rate"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                raise InvalidConfiguration(name, f"must be a positive number, got {value!r}")


def _xy(v: float) -> str:
    return f"{v:.{XY_DECIMALS}f}"


def _z(v: float) -> str:
    return f"{v:.{Z_DECIMALS}f}"


def _f(v: float) -> str:
    return f"{v:.{FEED_DECIMALS}f}"


def generate_header(profile: MillingProfile) -> List[str]:
    return [
        "(stencil packer toolpath)",
        "G21 (Units: mm)",
        "G90 (Absolute positioning)",
        f"G0 Z{_z(profile.safe_height)} F{_f(profile.travel_rate)} (Move to safe height)",
    ]


def generate_plunge(x: float, y: float, profile: MillingProfile) -> List[str]:
    """Travel to safe height, move over (x, y), plunge, retract."""
    safe = _z(profile.safe_height)
    travel = _f(profile.travel_rate)
    return [
        f"G0 Z{safe} F{travel}",
        f"G0 X{_xy(x)} Y{_xy(y)} F{travel}",
        f"G1 Z{_z(-profile.mill_depth)} F{_f(profile.mill_rate)}",
        f"G0 Z{safe} F{travel}",
    ]


def generate_footer(profile: MillingProfile) -> List[str]:
    return [
        f"G0 Z{_z(profile.safe_height)} F{_f(profile.travel_rate)} (Return to safe height)",
        "M2 (End of program)",
    ]


def generate_gcode(placements: Iterable[CirclePlacement], profile: MillingProfile) -> List[str]:
    lines = generate_header(profile)
    for c in placements:
        lines.extend(generate_plunge(c.x, c.y, profile))
    lines.extend(generate_footer(profile))
    return lines


def write_gcode(path: str, placements: Iterable[CirclePlacement], profile: MillingProfile) -> int:
    """Write the toolpath for ``placements`` to ``path``; returns the line count."""
    lines = generate_gcode(placements, profile)
    outdir = os.path.dirname(path)
    if outdir:
        os.makedirs(outdir, exist_ok=True)
    with open(path, "w", newline="\n") as f:
        f.write("\n".join(lines) + "\n")
    return len(lines)
