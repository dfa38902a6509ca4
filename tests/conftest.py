"""Shared fixtures and mask builders for the stencil packer tests."""

from __future__ import annotations

import numpy as np
import pytest

from stencil_packing import Grid, Label, PackingConfig


def mask_to_image(mask: np.ndarray, background: str = "white") -> np.ndarray:
    """BGR uint8 image: foreground cells get the opposite colour of the background."""
    bg = 255 if background == "white" else 0
    img = np.full(mask.shape + (3,), bg, dtype=np.uint8)
    img[mask.astype(bool)] = 255 - bg
    return img


def mask_to_grid(mask: np.ndarray, cell_size: float = 1.0) -> Grid:
    labels = np.where(mask.astype(bool), Label.UNCLAIMED, Label.BACKGROUND).astype(np.uint8)
    return Grid(labels=labels, cell_size=cell_size)


def disk_mask(shape, cx: float, cy: float, r: float) -> np.ndarray:
    ys, xs = np.mgrid[0:shape[0], 0:shape[1]]
    return ((xs + 0.5 - cx) ** 2 + (ys + 0.5 - cy) ** 2) <= r * r


@pytest.fixture()
def two_blob_mask() -> np.ndarray:
    """30 x 40 mask with a 10x10 square and a 12x18 rectangle, far apart."""
    mask = np.zeros((30, 40), dtype=bool)
    mask[2:12, 2:12] = True
    mask[15:27, 20:38] = True
    return mask


@pytest.fixture()
def small_config() -> PackingConfig:
    return PackingConfig(pixel_size=1.0, tool_diameter=3.0, background="white", shift_steps=4)
