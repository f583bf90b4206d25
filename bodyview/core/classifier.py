"""
Nearest-centroid view classification with calibrated confidence.

An embedding is assigned to the cluster whose centroid is closest in
Euclidean distance. Confidence comes from how clearly the winner beats the
runner-up: the relative gap ``(d2 - d1) / d2`` between the two smallest
distances is compared against a configurable threshold table.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from ..utils.logging import get_logger
from ..utils.config import Config
from ..utils.numeric import as_embedding, euclidean_distances
from .cluster_store import ClusterStore
from .exceptions import DataIntegrityError, EmptyCategoryError
from .models import BodypartView, Category, Classification, ConfidenceLevel
from .provider import EmbeddingProvider

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConfidenceThresholds:
    """Minimum relative distance gaps for each confidence level."""

    high_margin: float = 0.5
    medium_margin: float = 0.2

    def __post_init__(self):
        if not 0 <= self.medium_margin <= self.high_margin <= 1:
            raise ValueError(
                "confidence margins must satisfy 0 <= medium <= high <= 1, got "
                f"medium={self.medium_margin}, high={self.high_margin}"
            )

    @classmethod
    def from_config(cls, config: Config) -> 'ConfidenceThresholds':
        return cls(config.confidence_high_margin, config.confidence_medium_margin)


def relative_margin(distances: Sequence[float]) -> float:
    """
    Relative gap between the best and second-best distance.

    Args:
        distances: Distances to every centroid (any order)

    Returns:
        Value in [0, 1]; 1.0 for a single centroid, 0.0 when the two best coincide
    """
    ordered = np.sort(np.asarray(distances, dtype=np.float64))
    if ordered.size == 0:
        raise ValueError("At least one distance is required")
    if ordered.size == 1:
        return 1.0

    best, runner_up = ordered[0], ordered[1]
    if runner_up <= 0:
        return 0.0
    return float((runner_up - best) / runner_up)


def score_confidence(distances: Sequence[float],
                     thresholds: Optional[ConfidenceThresholds] = None) -> ConfidenceLevel:
    """
    Map a distance distribution to a confidence level.

    Args:
        distances: Distances from the query to every centroid of the category
        thresholds: Threshold table (defaults to ConfidenceThresholds())

    Returns:
        HIGH, MEDIUM or LOW

    Example:
        >>> score_confidence([0.1, 1.3])
        <ConfidenceLevel.HIGH: 2>
        >>> score_confidence([1.0, 1.1])
        <ConfidenceLevel.LOW: 0>
    """
    thresholds = thresholds or ConfidenceThresholds()
    margin = relative_margin(distances)

    if margin >= thresholds.high_margin:
        return ConfidenceLevel.HIGH
    if margin >= thresholds.medium_margin:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


class NearestCentroidClassifier:
    """Assign embeddings to the nearest view-cluster centroid."""

    def __init__(self,
                 store: ClusterStore,
                 config: Optional[Config] = None,
                 provider: Optional[EmbeddingProvider] = None,
                 thresholds: Optional[ConfidenceThresholds] = None):
        """
        Initialize the classifier.

        Args:
            store: Cluster store providing centroids
            config: Configuration object (defaults to the store's)
            provider: Embedding provider, needed only for classify_image
            thresholds: Confidence thresholds (defaults to config values)
        """
        self.store = store
        self.config = config or store.config
        self.provider = provider
        self.thresholds = thresholds or ConfidenceThresholds.from_config(self.config)

    def classify(self, embedding: np.ndarray, category: Category) -> Classification:
        """
        Classify an embedding within a category.

        Labels are scanned in ascending order and the first minimum wins, so
        equidistant centroids resolve to the lowest label.

        Args:
            embedding: Query embedding
            category: Anatomical category of the image

        Returns:
            Classification with view, confidence, winning distance and margin

        Raises:
            EmptyCategoryError: If the category has no clusters
            DataIntegrityError: If the embedding and centroid dimensions differ
        """
        centroids = self.store.get_centroids(category)
        if not centroids:
            raise EmptyCategoryError(category)

        query = as_embedding(embedding)
        labels = list(centroids)
        matrix = np.stack([centroids[label] for label in labels])

        if matrix.shape[1] != query.shape[0]:
            raise DataIntegrityError(
                f"Embedding has {query.shape[0]} dimensions but centroids have {matrix.shape[1]}",
                category
            )

        distances = euclidean_distances(query, matrix)
        best = int(np.argmin(distances))

        result = Classification(
            view=BodypartView(category, labels[best]),
            confidence=score_confidence(distances, self.thresholds),
            distance=float(distances[best]),
            margin=relative_margin(distances)
        )

        logger.debug(
            f"Classified {category} embedding as cluster {result.label} "
            f"({result.confidence.name}, distance={result.distance:.4f}, margin={result.margin:.3f})"
        )
        return result

    def classify_image(self, image_bytes: bytes, category: Category) -> Classification:
        """
        Embed an encoded image with the provider, then classify it.

        Args:
            image_bytes: PNG/JPEG file contents
            category: Anatomical category of the image

        Returns:
            Classification
        """
        if self.provider is None:
            raise ValueError("classify_image requires an embedding provider")
        return self.classify(self.provider.embed(image_bytes), category)
