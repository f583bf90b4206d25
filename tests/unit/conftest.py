"""
Shared fixtures: a small HAND/WRIST metadata layout with matching image files.
"""

import sys
import os

import pytest

# Add repository root to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../')))

from bodyview.utils.config import Config
from fakes import HAND_CENTROIDS, HAND_MEMBERS, MEMBER_VECTORS, VectorProvider, encode_vector, write_category


@pytest.fixture
def metadata_dir(tmp_path):
    """Metadata root with HAND (two clusters) and WRIST (three clusters)."""
    root = tmp_path / "output"
    write_category(root, "HAND", HAND_CENTROIDS, HAND_MEMBERS)
    write_category(
        root, "WRIST",
        {0: [1.0, 0.0, 0.0], 1: [0.0, 1.0, 0.0], 2: [0.0, 0.0, 1.0]},
        {0: ["w0.png"], 1: ["w1.png"], 2: ["w2.png"]},
        filename_index={"w0.png": 0, "w1.png": 1, "w2.png": 2}
    )
    return root


@pytest.fixture
def image_dir(tmp_path):
    """Directory of HAND member 'images' readable by VectorProvider."""
    directory = tmp_path / "images"
    directory.mkdir()
    for name, vector in MEMBER_VECTORS.items():
        (directory / name).write_bytes(encode_vector(vector))
    return directory


@pytest.fixture
def config(metadata_dir, image_dir):
    """Configuration pointing at the test layout."""
    return Config(metadata_dir=metadata_dir, image_dir=image_dir, num_workers=4)


@pytest.fixture
def provider():
    """Thread-safe deterministic provider."""
    return VectorProvider()
