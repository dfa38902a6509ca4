#!/usr/bin/env python3

"""
stencil_packing_cli.py

CLI for turning a solder paste / stencil mask PNG into milling positions.

This module loads the mask image, packs fixed-diameter tool circles into every
foreground component, writes debug PNGs, optionally a CSV layout, and a G-code
file that plunges the tool once per circle.

Typical usage:
    $ python3 stencil_packing_cli.py --config stencil.yaml
    $ python3 stencil_packing_cli.py --input paste.png --output paste.nc \\
          --px_size 0.05 --tool_diameter 0.8 --n 4 --background white \\
          --mill_depth 0.2 --safe_height 2 --mill_rate 60 --travel_rate 600

Every setting can come from the YAML file; command-line flags override it.
The public entry point is :func:`main`. A JSON summary is printed to stdout.
"""

from __future__ import annotations
import argparse, csv, json, os, sys
from typing import Any, Dict, Optional, Sequence

import cv2
import numpy as np
import yaml

from stencil_gcode import MillingProfile, write_gcode
from stencil_packing import (
    DEFAULT_SHIFT_STEPS,
    DEFAULT_SUPERSAMPLE,
    Grid,
    InvalidConfiguration,
    Label,
    MalformedInput,
    PackingConfig,
    PackingResult,
    StencilPackingError,
    announce,
    ensure_bool,
    pack_grid,
    rasterize,
)

# =========================
# Configurable constants
# =========================
# Setting name -> type; also the command-line flag names (--<name>)
SETTING_TYPES = {
    "input": str,
    "output": str,
    "background": str,
    "px_size": float,
    "tool_diameter": float,
    "mill_depth": float,
    "safe_height": float,
    "mill_rate": float,
    "travel_rate": float,
    "n": int,
    "shift_steps": int,
    "debug_outdir": str,
    "layout_csv": str,
}
MANDATORY_SETTINGS = [
    "input", "output", "background", "px_size", "tool_diameter",
    "mill_depth", "safe_height", "mill_rate", "travel_rate",
]
DEFAULT_SETTINGS = {
    "n": DEFAULT_SUPERSAMPLE,
    "shift_steps": DEFAULT_SHIFT_STEPS,
    "debug_outdir": ".",
    "layout_csv": None,
}

# Debug output
BASE_DEBUG_NAME = "base.debug.png"
OUT_DEBUG_NAME = "out.debug.png"
DRAW_CIRCLE_BGR = (0, 0, 255)
DRAW_FILLED_THICKNESS = -1
DRAW_LINE_TYPE = cv2.LINE_AA
DRAW_SHIFT_BITS = 4  # fractional bits for sub-cell circle centres

LAYOUT_CSV_FIELDS = ["component", "family", "x_mm", "y_mm", "diameter_mm"]


# =========================
# Settings
# =========================
class MissingSettings(InvalidConfiguration):
    """One or more mandatory settings are absent from both the file and the flags."""

    def __init__(self, missing: Sequence[str]):
        names = ", ".join(missing)
        StencilPackingError.__init__(self, f"Some mandatory settings not set: {names}.")
        self.parameter = names
        self.missing = list(missing)


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Pack fixed-diameter milling circles into a stencil mask PNG.")
    p.add_argument("--config", help="Path to a YAML settings file.")
    p.add_argument("--input", help="Input PNG file with a solder paste map.")
    p.add_argument("--output", help="Output G-code file.")
    p.add_argument("--background", help="Background color: black or white.")
    p.add_argument("--px_size", type=float, help="Size of a pixel side (mm).")
    p.add_argument("--tool_diameter", type=float, help="Tool diameter (mm).")
    p.add_argument("--mill_depth", type=float, help="Mill depth (mm).")
    p.add_argument("--safe_height", type=float, help="Safe height to move between mill points (mm).")
    p.add_argument("--mill_rate", type=float, help="Mill rate (mm/min).")
    p.add_argument("--travel_rate", type=float, help="Travel rate (mm/min).")
    p.add_argument("--n", type=int,
                   help="Number of linear subpixels for each pixel when searching for milling positions.")
    p.add_argument("--shift_steps", type=int, help="Lattice offset steps per axis tried for each component.")
    p.add_argument("--debug_outdir", help="Directory for base.debug.png and out.debug.png.")
    p.add_argument("--layout_csv", help="Optional CSV file listing every circle.")
    p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
    return p


def read_config_file(path: str) -> Dict[str, Any]:
    with open(path, "r") as f:
        cfg = yaml.safe_load(f)
    if cfg is None:
        return {}
    if not isinstance(cfg, dict):
        raise InvalidConfiguration("--config", f"{path} must contain a mapping of settings")
    unknown = sorted(set(cfg) - set(SETTING_TYPES))
    if unknown:
        raise InvalidConfiguration("--config", f"unknown settings: {', '.join(unknown)}")
    return cfg


def load_settings(args: argparse.Namespace) -> Dict[str, Any]:
    """
    Merge defaults, the YAML file (if any) and command-line flags, coerce
    every value to its type and check that the mandatory settings are set.
    """
    settings: Dict[str, Any] = dict(DEFAULT_SETTINGS)
    if args.config:
        settings.update(read_config_file(args.config))
    for name in SETTING_TYPES:
        value = getattr(args, name, None)
        if value is not None:
            settings[name] = value

    missing = [f"--{name}" for name in MANDATORY_SETTINGS if settings.get(name) in (None, "")]
    if missing:
        raise MissingSettings(missing)

    for name, typ in SETTING_TYPES.items():
        value = settings.get(name)
        if value is None:
            continue
        if typ is int and isinstance(value, float) and not value.is_integer():
            raise InvalidConfiguration(name, f"must be an integer, got {value!r}")
        try:
            settings[name] = typ(value)
        except (TypeError, ValueError):
            raise InvalidConfiguration(name, f"cannot convert {value!r} to {typ.__name__}") from None
    return settings


def packing_config_from(settings: Dict[str, Any]) -> PackingConfig:
    return PackingConfig(
        pixel_size=settings["px_size"],
        tool_diameter=settings["tool_diameter"],
        background=settings["background"],
        supersample=settings["n"],
        shift_steps=settings["shift_steps"],
    )


def milling_profile_from(settings: Dict[str, Any]) -> MillingProfile:
    return MillingProfile(
        mill_depth=settings["mill_depth"],
        safe_height=settings["safe_height"],
        mill_rate=settings["mill_rate"],
        travel_rate=settings["travel_rate"],
    )


# =========================
# Image I/O and debug rendering
# =========================
def load_image(path: str) -> np.ndarray:
    """Decode an image file keeping its channels and bit depth."""
    img = cv2.imread(path, cv2.IMREAD_UNCHANGED)
    ensure_bool(img is not None, f"Failed to decode image file {path!r}.", MalformedInput)
    return img


def render_base_debug(grid: Grid) -> np.ndarray:
    """Binarized mask: 0 for background cells, 255 for everything else."""
    return np.where(grid.labels == Label.BACKGROUND, 0, 255).astype(np.uint8)


def render_overlay_debug(grid: Grid, result: PackingResult) -> np.ndarray:
    """Binarized mask with every placement drawn as a filled red disc."""
    out = cv2.cvtColor(render_base_debug(grid), cv2.COLOR_GRAY2BGR)
    unit = float(1 << DRAW_SHIFT_BITS)
    for c in result.placements:
        # OpenCV puts pixel centres on integer coordinates
        center = (int(round((c.x / grid.cell_size - 0.5) * unit)),
                  int(round((c.y / grid.cell_size - 0.5) * unit)))
        radius = int(round(c.radius / grid.cell_size * unit))
        cv2.circle(out, center, radius, DRAW_CIRCLE_BGR,
                   thickness=DRAW_FILLED_THICKNESS, lineType=DRAW_LINE_TYPE, shift=DRAW_SHIFT_BITS)
    return out


def save_png(path: str, img: np.ndarray):
    outdir = os.path.dirname(path)
    if outdir:
        os.makedirs(outdir, exist_ok=True)
    ok = cv2.imwrite(path, img)
    ensure_bool(ok, f"Failed to save PNG image to {path!r}.", StencilPackingError)


# =========================
# Layout export
# =========================
def write_layout_csv(csv_path: str, result: PackingResult) -> int:
    """
    Write one CSV row per placement, in placement order.

    Columns: component index, lattice family, centre x/y and diameter (mm).
    Returns the number of rows written.
    """
    rows = []
    for res in result.components:
        for c in res.placements:
            rows.append({
                "component": res.component.index,
                "family": res.family.value,
                "x_mm": f"{c.x:.4f}",
                "y_mm": f"{c.y:.4f}",
                "diameter_mm": f"{c.diameter:.4f}",
            })

    outdir = os.path.dirname(csv_path)
    if outdir:
        os.makedirs(outdir, exist_ok=True)
    with open(csv_path, "w", newline="") as f:
        w = csv.DictWriter(f, fieldnames=LAYOUT_CSV_FIELDS)
        w.writeheader()
        w.writerows(rows)
    return len(rows)


# =========================
# Main pipeline
# =========================
def stencil_from_image(settings: Dict[str, Any]) -> Dict[str, Any]:
    """
    Run the whole pipeline for already-merged ``settings``.

    Configuration is validated before the image is read; the G-code file is
    written only after packing succeeded.
    """
    config = packing_config_from(settings)
    profile = milling_profile_from(settings)

    announce("LOAD_IMAGE", {"path": settings["input"]})
    img = load_image(settings["input"])
    print(f"[OK] Image loaded: shape={img.shape} dtype={img.dtype}.")

    announce("RASTERIZE", {"background": config.background.value, "n": config.supersample,
                           "cell_size_mm": config.cell_size})
    grid = rasterize(img, config.background, config.supersample, config.pixel_size)
    foreground = grid.count(Label.UNCLAIMED)
    print(f"[OK] Grid {grid.cols}x{grid.rows}: {foreground} foreground cells.")

    debug_outdir = settings.get("debug_outdir")
    if debug_outdir:
        base_path = os.path.join(debug_outdir, BASE_DEBUG_NAME)
        announce("SAVE_DEBUG", {"path": base_path})
        save_png(base_path, render_base_debug(grid))

    result = pack_grid(grid, config)
    if foreground == 0:
        print("[WARN] Image has no foreground; no circles placed.")

    summary: Dict[str, Any] = {
        "components": [
            {
                "index": res.component.index,
                "bbox": [res.component.bbox.x_min, res.component.bbox.y_min,
                         res.component.bbox.x_max, res.component.bbox.y_max],
                "pixels": res.component.pixel_count,
                "family": res.family.value,
                "offset_mm": [res.offset[0], res.offset[1]],
                "circles": res.count,
            }
            for res in result.components
        ],
        "circles": len(result.placements),
        "tool_diameter_mm": config.tool_diameter,
        "grid_size": [grid.cols, grid.rows],
    }

    if debug_outdir:
        out_path = os.path.join(debug_outdir, OUT_DEBUG_NAME)
        announce("SAVE_DEBUG", {"path": out_path, "circles": len(result.placements)})
        save_png(out_path, render_overlay_debug(grid, result))
        summary["debug_images"] = [base_path, out_path]

    if settings.get("layout_csv"):
        announce("WRITE_LAYOUT_CSV", {"csv_path": settings["layout_csv"]})
        write_layout_csv(settings["layout_csv"], result)
        summary["layout_csv"] = settings["layout_csv"]

    announce("WRITE_GCODE", {"path": settings["output"], "circles": len(result.placements)})
    n_lines = write_gcode(settings["output"], result.placements, profile)
    print(f"[OK] G-code saved: {settings['output']} ({n_lines} lines).")
    summary["gcode"] = settings["output"]
    return summary


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Entry point for the stencil packing command-line interface.

    Parses arguments, merges them with the YAML settings file, runs the
    packing pipeline and prints a JSON summary. On failure prints a single
    ``{"error": ...}`` object and returns 1.
    """
    args = build_arg_parser().parse_args(argv)
    try:
        settings = load_settings(args)
        result = stencil_from_image(settings)
    except (StencilPackingError, OSError, yaml.YAMLError) as e:
        print(json.dumps({"error": str(e)}))
        return 1

    print(json.dumps(result, indent=2 if args.pretty else None))
    return 0


if __name__ == "__main__":
    sys.exit(main())
