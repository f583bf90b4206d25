"""
Cluster metadata store for bodypart view classification.

Centroids and cluster memberships are produced offline by the view
clustering job. Each category lives in its own directory:

    <metadata_dir>/XR_HAND/label_to_image_filenames/
        mean_features_label_0.txt          one float per line
        mean_features_label_1.txt
        labels_to_image_filenames.json     {"0": ["a.png", ...], "1": [...]}
        image_filename_to_label_dict.json  {"a.png": "0", ...}

The store loads a category lazily on first access, exactly once, and keeps it
read-only for the lifetime of the store.
"""

import json
import math
import re
import threading
import time
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np

from ..utils.logging import get_logger
from ..utils.config import Config
from ..utils.numeric import as_embedding
from .exceptions import DataIntegrityError
from .models import BodypartView, Category

logger = get_logger(__name__)

METADATA_SUBDIR = "label_to_image_filenames"
MEMBERSHIP_FILE_PREFIX = "labels_to_image_filenames"
FILENAME_INDEX_FILE = "image_filename_to_label_dict.json"
CENTROID_FILE_PATTERN = re.compile(r"^mean_features_label_?(\d+)\.txt$")


def decode_centroid_file(path: Path,
                         expected_dim: Optional[int] = None,
                         category: Optional[Category] = None) -> np.ndarray:
    """
    Decode one centroid file (newline-separated floats).

    Args:
        path: Centroid file
        expected_dim: Required vector length, if known
        category: Category being decoded (for error messages)

    Returns:
        Read-only 1-D float32 centroid

    Raises:
        DataIntegrityError: If the file is unreadable, empty, non-numeric or
            has the wrong number of values
    """
    try:
        content = path.read_text()
    except OSError as e:
        raise DataIntegrityError(f"Cannot read centroid file {path.name}: {e}", category, path) from e

    lines = content.strip().split("\n")
    if lines == [""]:
        raise DataIntegrityError(f"Centroid file {path.name} is empty", category, path)

    values = []
    for line_no, line in enumerate(lines, 1):
        try:
            value = float(line.strip())
        except ValueError:
            raise DataIntegrityError(
                f"Centroid file {path.name} line {line_no} is not a number: {line.strip()!r}",
                category, path
            ) from None
        if not math.isfinite(value):
            raise DataIntegrityError(
                f"Centroid file {path.name} line {line_no} is not finite", category, path
            )
        values.append(value)

    if expected_dim is not None and len(values) != expected_dim:
        raise DataIntegrityError(
            f"Centroid file {path.name} has {len(values)} values, expected {expected_dim}",
            category, path
        )

    return as_embedding(values)


def _read_json_object(path: Path, category: Optional[Category]) -> dict:
    """Read a JSON file whose top level must be an object."""
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise DataIntegrityError(f"Cannot decode {path.name}: {e}", category, path) from e

    if not isinstance(data, dict):
        raise DataIntegrityError(f"{path.name} must contain a JSON object", category, path)

    return data


def _parse_label(raw, path: Path, category: Optional[Category]) -> int:
    """Labels are written as JSON strings ("3") or integers."""
    if isinstance(raw, bool):
        raise DataIntegrityError(f"Invalid cluster label {raw!r} in {path.name}", category, path)
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise DataIntegrityError(f"Invalid cluster label {raw!r} in {path.name}", category, path) from None


def decode_membership_file(path: Path,
                           category: Optional[Category] = None) -> Dict[int, List[str]]:
    """
    Decode the label -> ordered image filenames file.

    Args:
        path: Membership JSON file
        category: Category being decoded (for error messages)

    Returns:
        Mapping from cluster label to filenames, preserving file order

    Raises:
        DataIntegrityError: If the file is malformed
    """
    data = _read_json_object(path, category)

    members: Dict[int, List[str]] = {}
    for raw_label, filenames in data.items():
        label = _parse_label(raw_label, path, category)
        if label in members:
            raise DataIntegrityError(f"Duplicate cluster label {label} in {path.name}", category, path)
        if not isinstance(filenames, list) or not all(isinstance(name, str) for name in filenames):
            raise DataIntegrityError(
                f"Cluster {label} in {path.name} must map to a list of filenames", category, path
            )
        members[label] = list(filenames)

    return members


def decode_filename_index(path: Path,
                          category: Optional[Category] = None) -> Dict[str, int]:
    """
    Decode the image filename -> cluster label file.

    Args:
        path: Filename index JSON file
        category: Category being decoded (for error messages)

    Returns:
        Mapping from filename to cluster label
    """
    data = _read_json_object(path, category)
    return {str(filename): _parse_label(label, path, category) for filename, label in data.items()}


def build_view_index(metadata_dir: Union[str, Path],
                     prefix: str = "XR_") -> Dict[str, BodypartView]:
    """
    Build the full filename -> view index over every category directory.

    Args:
        metadata_dir: Root of the cluster metadata layout
        prefix: Category directory prefix

    Returns:
        Mapping from image filename to its BodypartView

    Raises:
        DataIntegrityError: If the root is missing, a prefixed directory names
            an unknown category, or a filename index is missing or malformed
    """
    metadata_dir = Path(metadata_dir)
    if not metadata_dir.is_dir():
        raise DataIntegrityError(f"Metadata directory not found: {metadata_dir}", path=metadata_dir)

    index: Dict[str, BodypartView] = {}
    for category_dir in sorted(metadata_dir.iterdir()):
        if not category_dir.is_dir() or not category_dir.name.startswith(prefix):
            continue

        try:
            category = Category.parse(category_dir.name, prefix)
        except ValueError as e:
            raise DataIntegrityError(str(e), path=category_dir) from e

        index_path = category_dir / METADATA_SUBDIR / FILENAME_INDEX_FILE
        if not index_path.is_file():
            raise DataIntegrityError(f"Missing {FILENAME_INDEX_FILE}", category, index_path)

        for filename, label in decode_filename_index(index_path, category).items():
            index[filename] = BodypartView(category, label)

    logger.info(f"Built view index with {len(index)} images")
    return index


class ClusterStore:
    """
    Lazily populated registry of centroids and cluster members per category.

    Each category is decoded at most once, even under concurrent first
    access, and is never modified afterwards.
    """

    def __init__(self,
                 config: Optional[Config] = None,
                 metadata_dir: Optional[Union[str, Path]] = None):
        """
        Initialize an empty store.

        Args:
            config: Configuration object
            metadata_dir: Root of the metadata layout (overrides config)
        """
        self.config = config or Config()
        self.metadata_dir = Path(metadata_dir) if metadata_dir else self.config.metadata_dir

        self._centroids: Dict[Category, Dict[int, np.ndarray]] = {}
        self._members: Dict[Category, Dict[int, List[str]]] = {}
        self._load_counts: Dict[Category, int] = defaultdict(int)

        self._locks: Dict[Category, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        logger.debug(f"ClusterStore created for {self.metadata_dir}")

    def category_dir(self, category: Category) -> Path:
        """Directory holding one category's centroid and membership files."""
        return self.metadata_dir / category.dir_name(self.config.category_dir_prefix) / METADATA_SUBDIR

    def _lock_for(self, category: Category) -> threading.Lock:
        with self._locks_guard:
            if category not in self._locks:
                self._locks[category] = threading.Lock()
            return self._locks[category]

    def is_loaded(self, category: Category) -> bool:
        """Whether the category has been populated."""
        return category in self._centroids

    def load_count(self, category: Category) -> int:
        """Number of times the category directory was decoded."""
        return self._load_counts[category]

    def ensure_loaded(self, category: Category) -> None:
        """
        Populate the category on first call; later calls are no-ops.

        Args:
            category: Category to load

        Raises:
            DataIntegrityError: If the category metadata is missing or
                malformed; the category stays unpopulated
        """
        if category in self._centroids:
            return

        with self._lock_for(category):
            # Another thread may have finished loading while we waited
            if category in self._centroids:
                return

            self._load_counts[category] += 1
            centroids, members = self._decode_category(category)

            self._members[category] = members
            self._centroids[category] = centroids

    def _decode_category(self, category: Category):
        """Decode and cross-validate one category directory without touching store state."""
        start_time = time.time()
        directory = self.category_dir(category)

        if not directory.is_dir():
            raise DataIntegrityError(f"Metadata directory not found: {directory}", category, directory)

        centroid_files: Dict[int, Path] = {}
        membership_files: List[Path] = []

        for path in sorted(directory.iterdir()):
            match = CENTROID_FILE_PATTERN.match(path.name)
            if match:
                label = int(match.group(1))
                if label in centroid_files:
                    raise DataIntegrityError(f"Duplicate centroid files for label {label}", category, path)
                centroid_files[label] = path
            elif path.name.startswith(MEMBERSHIP_FILE_PREFIX):
                membership_files.append(path)

        if len(membership_files) != 1:
            raise DataIntegrityError(
                f"Expected exactly one {MEMBERSHIP_FILE_PREFIX} file, found {len(membership_files)}",
                category, directory
            )

        expected_dim = self.config.embedding_dim
        centroids: Dict[int, np.ndarray] = {}
        for label in sorted(centroid_files):
            centroid = decode_centroid_file(centroid_files[label], expected_dim, category)
            # All centroids share the first one's dimensionality
            expected_dim = len(centroid)
            centroids[label] = centroid

        members = decode_membership_file(membership_files[0], category)

        orphaned = sorted(set(members) - set(centroids))
        if orphaned:
            raise DataIntegrityError(f"Clusters {orphaned} have members but no centroid", category, directory)

        for label in centroids:
            if not members.get(label):
                raise DataIntegrityError(f"Cluster {label} has a centroid but no members", category, directory)

        logger.info(
            f"Loaded {len(centroids)} clusters for {category} "
            f"(dim={expected_dim}) in {(time.time() - start_time) * 1000:.1f}ms"
        )
        return centroids, {label: members[label] for label in sorted(members)}

    def get_centroids(self, category: Category) -> Dict[int, np.ndarray]:
        """
        Centroids of a category, ordered by ascending label.

        Args:
            category: Category to query

        Returns:
            Mapping from cluster label to centroid (a new dict; arrays are read-only)
        """
        self.ensure_loaded(category)
        return dict(self._centroids[category])

    def get_members(self, category: Category, label: int) -> List[str]:
        """
        Ordered image filenames of one cluster.

        Args:
            category: Category to query
            label: Cluster label

        Returns:
            Copy of the member list

        Raises:
            KeyError: If the category has no such cluster
        """
        self.ensure_loaded(category)
        members = self._members[category]
        if label not in members:
            raise KeyError(f"No cluster {label} for bodypart {category}")
        return list(members[label])

    def labels(self, category: Category) -> List[int]:
        """Cluster labels of a category in ascending order."""
        self.ensure_loaded(category)
        return list(self._centroids[category])

    def cluster_files(self, view: BodypartView) -> List[str]:
        """Image filenames belonging to the given view."""
        return self.get_members(view.category, view.label)

    def view_index(self) -> Dict[str, BodypartView]:
        """Filename -> view index over every category under this store's root."""
        return build_view_index(self.metadata_dir, self.config.category_dir_prefix)
