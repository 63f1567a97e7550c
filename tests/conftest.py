"""Shared fixtures: Agg backend, fresh configs and synthetic camera frames."""
import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest
from skimage import draw

from config import make_config


def blank_frame(height=240, width=240, value=255):
    return np.full((height, width, 3), value, dtype=np.uint8)


def frame_with_disk(center, radius, colour=(60, 60, 60), height=240, width=240, background=255):
    """White frame with one filled disk; `center` is (x, y)."""
    frame = blank_frame(height, width, background)
    rr, cc = draw.disk((center[1], center[0]), radius, shape=frame.shape[:2])
    frame[rr, cc] = colour
    return frame


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def virtual_config():
    """Small virtual canvas so the target sits at (64, 36) without detection."""
    return make_config({
        'display': {'target_style': 'virtual'},
        'camera': {'width': 128, 'height': 72},
    })
