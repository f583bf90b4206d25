"""
Core processing modules for bodypart view classification.

Contains the cluster store, nearest-centroid classifier, batch inference
orchestrator and retrieval engine.
"""

from .models import Category, ConfidenceLevel, BodypartView, Classification
from .exceptions import (
    BodyViewError, DataIntegrityError, EmptyCategoryError, ItemFailure,
    BatchAbort, BatchTimeoutError, RetrievalError
)
from .provider import Concurrency, EmbeddingProvider, InferenceContext
from .cluster_store import ClusterStore, build_view_index
from .classifier import NearestCentroidClassifier, ConfidenceThresholds, score_confidence
from .batch import BatchInferenceOrchestrator, BatchItem, BatchMode, BatchResult
from .retrieval import RetrievalEngine
from .view_manager import ViewManager

__all__ = [
    'Category', 'ConfidenceLevel', 'BodypartView', 'Classification',
    'BodyViewError', 'DataIntegrityError', 'EmptyCategoryError', 'ItemFailure',
    'BatchAbort', 'BatchTimeoutError', 'RetrievalError',
    'Concurrency', 'EmbeddingProvider', 'InferenceContext',
    'ClusterStore', 'build_view_index',
    'NearestCentroidClassifier', 'ConfidenceThresholds', 'score_confidence',
    'BatchInferenceOrchestrator', 'BatchItem', 'BatchMode', 'BatchResult',
    'RetrievalEngine', 'ViewManager',
]
