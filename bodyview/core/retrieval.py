"""
Retrieval of the most similar reference radiograph within a view-cluster.

The query is classified, the first ``limit`` members of the matched cluster
are embedded with the batch orchestrator, and the member with the highest
cosine similarity to the query wins.

Candidates are a prefix of the cluster's member list, not a random sample.
This keeps retrieval cost bounded for large clusters; it is a scalability
shortcut and gives no statistical guarantee that the best image in the
cluster is considered.
"""

import time
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np

from ..utils.logging import get_logger
from ..utils.config import Config
from ..utils.numeric import as_embedding, cosine_similarities
from .batch import BatchInferenceOrchestrator, BatchItem, BatchMode
from .classifier import NearestCentroidClassifier
from .cluster_store import ClusterStore
from .exceptions import RetrievalError
from .models import BodypartView, Category

logger = get_logger(__name__)


class RetrievalEngine:
    """Find the closest cluster member to a query embedding."""

    def __init__(self,
                 store: ClusterStore,
                 classifier: NearestCentroidClassifier,
                 orchestrator: BatchInferenceOrchestrator,
                 config: Optional[Config] = None,
                 image_dir: Optional[Path] = None):
        """
        Initialize the retrieval engine.

        Args:
            store: Cluster store providing member lists
            classifier: Classifier used to pick the cluster
            orchestrator: Batch orchestrator used to embed candidates
            config: Configuration object
            image_dir: Directory member filenames are relative to (overrides config)
        """
        self.store = store
        self.classifier = classifier
        self.orchestrator = orchestrator
        self.config = config or store.config
        self.image_dir = Path(image_dir) if image_dir else self.config.image_dir

    def resolve(self, filename: str) -> Path:
        """Filesystem path of a cluster member."""
        return self.image_dir / filename if self.image_dir else Path(filename)

    def candidate_members(self, view: BodypartView, limit: Optional[int] = None) -> List[str]:
        """
        First ``limit`` members of a cluster.

        Args:
            view: Cluster to draw from
            limit: Maximum number of candidates (defaults to config.retrieval_limit)

        Returns:
            Prefix of the member list

        Raises:
            RetrievalError: If limit is not a positive integer
        """
        limit = self.config.retrieval_limit if limit is None else limit
        if limit < 1:
            raise RetrievalError(f"Retrieval limit must be >= 1, got {limit}")

        members = list(dict.fromkeys(self.store.cluster_files(view)))
        if limit > len(members):
            logger.info(
                f"Retrieval limit {limit} exceeds cluster {view.label} size {len(members)}; clamping"
            )
        return members[:limit]

    def rank_candidates(self,
                        query_embedding: np.ndarray,
                        category: Category,
                        limit: Optional[int] = None) -> List[Tuple[str, float]]:
        """
        Rank candidate members by cosine similarity to the query.

        Args:
            query_embedding: Query embedding
            category: Anatomical category of the query
            limit: Maximum number of candidates

        Returns:
            (filename, similarity) pairs, most similar first; equal scores
            keep cluster order

        Raises:
            RetrievalError: If no candidate could be embedded
        """
        start_time = time.time()
        query = as_embedding(query_embedding)
        classification = self.classifier.classify(query, category)
        candidates = self.candidate_members(classification.view, limit)

        items = [BatchItem.from_path(self.resolve(name), identity=name) for name in candidates]

        # Sequential: providers are not assumed safe for concurrent use of one context
        batch = self.orchestrator.run_batch(items, mode=BatchMode.SEQUENTIAL)

        embedded = [name for name in candidates if name in batch]
        if not embedded:
            raise RetrievalError(
                f"None of {len(candidates)} candidates in cluster {classification.label} "
                f"of {category} could be embedded"
            )

        similarities = cosine_similarities(query, np.stack([batch[name] for name in embedded]))
        order = np.argsort(-similarities, kind="stable")
        ranking = [(embedded[i], float(similarities[i])) for i in order]

        logger.info(
            f"Ranked {len(ranking)}/{len(candidates)} candidates from cluster {classification.label} "
            f"of {category} in {(time.time() - start_time) * 1000:.1f}ms"
        )
        return ranking

    def find_closest(self,
                     query_embedding: np.ndarray,
                     category: Category,
                     limit: Optional[int] = None) -> str:
        """
        Identity of the cluster member most similar to the query.

        Args:
            query_embedding: Query embedding
            category: Anatomical category of the query
            limit: Maximum number of candidates

        Returns:
            Member filename with maximum cosine similarity
        """
        best, similarity = self.rank_candidates(query_embedding, category, limit)[0]
        logger.debug(f"Closest member similarity: {similarity:.4f}")
        return best
