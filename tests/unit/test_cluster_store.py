"""
Unit tests for the cluster metadata store.

Tests ensure that:
1. Categories load lazily and exactly once, even under concurrent access
2. Malformed metadata raises DataIntegrityError and leaves the store unchanged
3. Membership and filename index files are decoded faithfully
"""

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
import sys
import os

import numpy as np
import pytest

# Add repository root to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../')))

from bodyview.core.cluster_store import (
    ClusterStore,
    build_view_index,
    decode_centroid_file,
    decode_membership_file
)
from bodyview.core.exceptions import DataIntegrityError
from bodyview.core.models import BodypartView, Category
from bodyview.utils.config import Config
from fakes import write_category


class TestClusterStoreLoading:
    """Lazy, idempotent population of categories."""

    def test_loads_on_first_access(self, config):
        """Nothing is read until a category is queried."""
        store = ClusterStore(config)

        assert not store.is_loaded(Category.HAND)

        centroids = store.get_centroids(Category.HAND)

        assert store.is_loaded(Category.HAND)
        assert not store.is_loaded(Category.WRIST)
        assert list(centroids) == [0, 1]
        np.testing.assert_array_equal(centroids[0], [1.0, 0.0])
        np.testing.assert_array_equal(centroids[1], [0.0, 1.0])

    def test_members_preserve_file_order(self, config):
        """Member lists keep the order written by the clustering job."""
        store = ClusterStore(config)

        assert store.get_members(Category.HAND, 0) == ["a.png", "b.png", "c.png"]
        assert store.get_members(Category.HAND, 1) == ["d.png", "e.png"]
        assert store.labels(Category.HAND) == [0, 1]

    def test_ensure_loaded_is_idempotent(self, config):
        """A second load is a no-op and leaves state unchanged."""
        store = ClusterStore(config)

        store.ensure_loaded(Category.HAND)
        first = store.get_centroids(Category.HAND)
        store.ensure_loaded(Category.HAND)
        second = store.get_centroids(Category.HAND)

        assert store.load_count(Category.HAND) == 1
        assert list(first) == list(second)
        for label in first:
            np.testing.assert_array_equal(first[label], second[label])

    def test_concurrent_first_access_loads_once(self, config):
        """Racing threads trigger exactly one decode."""
        store = ClusterStore(config)
        original = store._decode_category

        def slow_decode(category):
            time.sleep(0.05)
            return original(category)

        store._decode_category = slow_decode
        barrier = threading.Barrier(8)

        def access():
            barrier.wait()
            return store.get_centroids(Category.HAND)

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(lambda _: access(), range(8)))

        assert store.load_count(Category.HAND) == 1
        assert all(list(result) == [0, 1] for result in results)

    def test_returned_centroids_are_read_only(self, config):
        """Callers cannot mutate the shared centroid arrays."""
        store = ClusterStore(config)
        centroids = store.get_centroids(Category.HAND)

        with pytest.raises(ValueError):
            centroids[0][0] = 5.0

        centroids.pop(0)
        assert list(store.get_centroids(Category.HAND)) == [0, 1]

    def test_unknown_label(self, config):
        """Asking for a missing cluster raises KeyError."""
        store = ClusterStore(config)

        with pytest.raises(KeyError):
            store.get_members(Category.HAND, 7)

    def test_cluster_files(self, config):
        """cluster_files resolves a view to its members."""
        store = ClusterStore(config)

        assert store.cluster_files(BodypartView(Category.WRIST, 2)) == ["w2.png"]

    def test_centroid_filename_without_separator(self, tmp_path):
        """Both mean_features_label_3.txt and mean_features_label3.txt are accepted."""
        directory = write_category(tmp_path, "ELBOW", {0: [1.0, 2.0]}, {0: ["x.png"], 3: ["y.png"]})
        (directory / "mean_features_label3.txt").write_text("3.0\n4.0\n")

        store = ClusterStore(Config(metadata_dir=tmp_path))

        assert store.labels(Category.ELBOW) == [0, 3]

    def test_category_without_clusters_loads_empty(self, tmp_path):
        """A category directory with no centroids is valid and empty."""
        write_category(tmp_path, "FINGER", {}, {})

        store = ClusterStore(Config(metadata_dir=tmp_path))

        assert store.get_centroids(Category.FINGER) == {}
        assert store.is_loaded(Category.FINGER)


class TestClusterStoreIntegrity:
    """Malformed metadata is fatal for the category."""

    def test_missing_category_directory(self, config):
        """A category with no directory cannot be loaded."""
        store = ClusterStore(config)

        with pytest.raises(DataIntegrityError, match="not found"):
            store.get_centroids(Category.SHOULDER)

        assert not store.is_loaded(Category.SHOULDER)

    def test_malformed_centroid_leaves_category_unpopulated(self, config, metadata_dir):
        """A non-numeric line aborts the load without partial state."""
        directory = metadata_dir / "XR_HAND" / "label_to_image_filenames"
        (directory / "mean_features_label_1.txt").write_text("0.0\nnot-a-number\n")

        store = ClusterStore(config)

        with pytest.raises(DataIntegrityError, match="not a number") as exc_info:
            store.ensure_loaded(Category.HAND)

        assert exc_info.value.category is Category.HAND
        assert not store.is_loaded(Category.HAND)

        # The failed load is not cached
        with pytest.raises(DataIntegrityError):
            store.ensure_loaded(Category.HAND)
        assert store.load_count(Category.HAND) == 2

    def test_inconsistent_dimensions(self, tmp_path):
        """Every centroid of a category has the same length."""
        write_category(tmp_path, "HAND", {0: [1.0, 0.0], 1: [0.0, 1.0, 0.0]},
                       {0: ["a.png"], 1: ["b.png"]})

        store = ClusterStore(Config(metadata_dir=tmp_path))

        with pytest.raises(DataIntegrityError, match="expected 2"):
            store.get_centroids(Category.HAND)

        assert not store.is_loaded(Category.HAND)
        assert store.load_count(Category.HAND) == 1

    def test_configured_dimension_is_enforced(self, config):
        """Centroids must match a configured embedding dimension."""
        config.embedding_dim = 2048
        store = ClusterStore(config)

        with pytest.raises(DataIntegrityError, match="expected 2048"):
            store.get_centroids(Category.HAND)

    def test_members_without_centroid(self, tmp_path):
        """Every member label needs a centroid."""
        write_category(tmp_path, "HAND", {0: [1.0, 0.0]}, {0: ["a.png"], 1: ["b.png"]})

        store = ClusterStore(Config(metadata_dir=tmp_path))

        with pytest.raises(DataIntegrityError, match="no centroid"):
            store.get_centroids(Category.HAND)

    def test_centroid_without_members(self, tmp_path):
        """Every centroid needs a non-empty member list."""
        write_category(tmp_path, "HAND", {0: [1.0, 0.0], 1: [0.0, 1.0]}, {0: ["a.png"], 1: []})

        store = ClusterStore(Config(metadata_dir=tmp_path))

        with pytest.raises(DataIntegrityError, match="no members"):
            store.get_centroids(Category.HAND)

    def test_missing_membership_file(self, config, metadata_dir):
        """Exactly one membership file is required."""
        directory = metadata_dir / "XR_HAND" / "label_to_image_filenames"
        (directory / "labels_to_image_filenames.json").unlink()

        store = ClusterStore(config)

        with pytest.raises(DataIntegrityError, match="exactly one"):
            store.get_centroids(Category.HAND)

    def test_malformed_membership_json(self, config, metadata_dir):
        """Unparsable JSON is an integrity error."""
        directory = metadata_dir / "XR_HAND" / "label_to_image_filenames"
        (directory / "labels_to_image_filenames.json").write_text("{not json")

        store = ClusterStore(config)

        with pytest.raises(DataIntegrityError, match="Cannot decode"):
            store.get_centroids(Category.HAND)

    def test_other_categories_unaffected(self, config, metadata_dir):
        """A broken category does not stop others from loading."""
        directory = metadata_dir / "XR_HAND" / "label_to_image_filenames"
        (directory / "mean_features_label_0.txt").write_text("")

        store = ClusterStore(config)

        with pytest.raises(DataIntegrityError, match="empty"):
            store.get_centroids(Category.HAND)
        assert store.labels(Category.WRIST) == [0, 1, 2]


class TestDecoders:
    """File-level decoders."""

    def test_decode_centroid_file(self, tmp_path):
        """One float per line, trailing newline tolerated."""
        path = tmp_path / "mean_features_label_0.txt"
        path.write_text("0.5\n-1.25\n3e-2\n")

        centroid = decode_centroid_file(path)

        assert centroid.dtype == np.float32
        np.testing.assert_allclose(centroid, [0.5, -1.25, 0.03], rtol=1e-6)

    def test_decode_centroid_rejects_non_finite(self, tmp_path):
        """NaN and infinity are not valid centroid values."""
        path = tmp_path / "mean_features_label_0.txt"
        path.write_text("0.5\nnan\n")

        with pytest.raises(DataIntegrityError, match="not finite"):
            decode_centroid_file(path)

    def test_decode_membership_file(self, tmp_path):
        """String and integer labels are both accepted."""
        path = tmp_path / "labels_to_image_filenames.json"
        path.write_text(json.dumps({"0": ["a.png"], "2": ["b.png", "c.png"]}))

        assert decode_membership_file(path) == {0: ["a.png"], 2: ["b.png", "c.png"]}

    def test_decode_membership_rejects_bad_label(self, tmp_path):
        """Labels must be integers."""
        path = tmp_path / "labels_to_image_filenames.json"
        path.write_text(json.dumps({"zero": ["a.png"]}))

        with pytest.raises(DataIntegrityError, match="Invalid cluster label"):
            decode_membership_file(path)


class TestViewIndex:
    """Filename -> view index over all categories."""

    def test_build_view_index(self, metadata_dir):
        """Every member of every category is indexed."""
        index = build_view_index(metadata_dir)

        assert len(index) == 8
        assert index["a.png"] == BodypartView(Category.HAND, 0)
        assert index["e.png"] == BodypartView(Category.HAND, 1)
        assert index["w2.png"] == BodypartView(Category.WRIST, 2)

    def test_store_view_index(self, config):
        """The store delegates to build_view_index with its root."""
        store = ClusterStore(config)

        assert store.view_index()["d.png"].label == 1

    def test_unknown_category_directory(self, metadata_dir):
        """A prefixed directory naming no known bodypart is rejected."""
        (metadata_dir / "XR_FOOT").mkdir()

        with pytest.raises(DataIntegrityError, match="Unknown bodypart"):
            build_view_index(metadata_dir)

    def test_ignores_unprefixed_directories(self, metadata_dir):
        """Directories without the category prefix are skipped."""
        (metadata_dir / "logs").mkdir()

        assert len(build_view_index(metadata_dir)) == 8

    def test_missing_root(self, tmp_path):
        """A missing metadata root is an integrity error."""
        with pytest.raises(DataIntegrityError):
            build_view_index(tmp_path / "missing")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
