"""End-to-end tests for the command-line interface."""

from __future__ import annotations

import csv
import json

import cv2
import numpy as np
import pytest
import yaml

import stencil_packing_cli as cli
from conftest import mask_to_image


def last_json(capsys) -> dict:
    out = capsys.readouterr().out.strip().splitlines()
    return json.loads(out[-1])


@pytest.fixture()
def square_png(tmp_path) -> str:
    mask = np.zeros((20, 20), dtype=bool)
    mask[5:15, 5:15] = True
    path = tmp_path / "paste.png"
    assert cv2.imwrite(str(path), mask_to_image(mask))
    return str(path)


@pytest.fixture()
def settings_args(tmp_path, square_png) -> list:
    return [
        "--input", square_png,
        "--output", str(tmp_path / "paste.nc"),
        "--background", "white",
        "--px_size", "1",
        "--tool_diameter", "5",
        "--mill_depth", "0.2",
        "--safe_height", "2",
        "--mill_rate", "60",
        "--travel_rate", "600",
        "--shift_steps", "4",
        "--debug_outdir", str(tmp_path / "debug"),
    ]


def test_full_run(tmp_path, settings_args, capsys):
    csv_path = tmp_path / "layout.csv"
    assert cli.main(settings_args + ["--layout_csv", str(csv_path)]) == 0
    summary = last_json(capsys)

    assert summary["circles"] == 4
    assert summary["grid_size"] == [20, 20]
    assert summary["components"][0]["bbox"] == [5, 5, 14, 14]
    assert summary["components"][0]["pixels"] == 100

    gcode = (tmp_path / "paste.nc").read_text().splitlines()
    assert sum(ln.startswith("G1 Z-0.200") for ln in gcode) == 4

    base = cv2.imread(str(tmp_path / "debug" / "base.debug.png"), cv2.IMREAD_UNCHANGED)
    assert base.shape == (20, 20)
    assert int((base == 255).sum()) == 100
    with open(csv_path, newline="") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 4
    assert {r["diameter_mm"] for r in rows} == {"5.0000"}
    assert {r["component"] for r in rows} == {"0"}

    overlay = cv2.imread(str(tmp_path / "debug" / "out.debug.png"), cv2.IMREAD_COLOR)
    assert overlay.shape == (20, 20, 3)
    for r in rows:
        col, row = int(float(r["x_mm"])), int(float(r["y_mm"]))
        assert overlay[row, col].tolist() == [0, 0, 255]
    assert overlay[0, 0].tolist() == [0, 0, 0]


def test_supersampled_run(tmp_path, settings_args, capsys):
    assert cli.main(settings_args + ["--n", "2"]) == 0
    summary = last_json(capsys)
    assert summary["grid_size"] == [40, 40]
    assert summary["components"][0]["pixels"] == 400


def test_yaml_config_with_override(tmp_path, square_png, capsys):
    cfg = {
        "input": square_png,
        "output": str(tmp_path / "from_yaml.nc"),
        "background": "white",
        "px_size": 1.0,
        "tool_diameter": 2.0,
        "mill_depth": 0.2,
        "safe_height": 2.0,
        "mill_rate": 60,
        "travel_rate": 600,
        "shift_steps": 2,
        "debug_outdir": "",
    }
    cfg_path = tmp_path / "stencil.yaml"
    cfg_path.write_text(yaml.safe_dump(cfg))

    assert cli.main(["--config", str(cfg_path), "--tool_diameter", "5", "--shift_steps", "4"]) == 0
    summary = last_json(capsys)
    assert summary["tool_diameter_mm"] == 5.0
    assert summary["circles"] == 4
    assert "debug_images" not in summary
    assert (tmp_path / "from_yaml.nc").exists()


def test_missing_settings_are_reported_together(square_png, capsys):
    assert cli.main(["--input", square_png, "--px_size", "0.1"]) == 1
    error = last_json(capsys)["error"]
    assert error == (
        "Some mandatory settings not set: --output, --background, --tool_diameter, "
        "--mill_depth, --safe_height, --mill_rate, --travel_rate."
    )


def test_unknown_background(settings_args, capsys):
    args = list(settings_args)
    args[args.index("--background") + 1] = "gray"
    assert cli.main(args) == 1
    assert "background" in last_json(capsys)["error"]


def test_unreadable_image_writes_no_gcode(tmp_path, settings_args, capsys):
    bogus = tmp_path / "bogus.png"
    bogus.write_text("not an image")
    args = list(settings_args)
    args[args.index("--input") + 1] = str(bogus)
    assert cli.main(args) == 1
    assert "decode" in last_json(capsys)["error"]
    assert not (tmp_path / "paste.nc").exists()


def test_unknown_yaml_key(tmp_path, capsys):
    cfg_path = tmp_path / "bad.yaml"
    cfg_path.write_text("px_size: 0.1\ncolour: red\n")
    assert cli.main(["--config", str(cfg_path)]) == 1
    assert "colour" in last_json(capsys)["error"]


def test_non_integer_n_from_yaml(tmp_path, settings_args, capsys):
    cfg_path = tmp_path / "n.yaml"
    cfg_path.write_text("n: 2.5\n")
    assert cli.main(settings_args + ["--config", str(cfg_path)]) == 1
    assert "for n:" in last_json(capsys)["error"]
