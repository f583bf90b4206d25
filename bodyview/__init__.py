"""
BodyView - Radiograph Bodypart View Classification
==================================================

Classifies musculoskeletal radiographs into view-clusters of their bodypart
by nearest-centroid matching of deep embeddings, reports a confidence level,
and retrieves the most similar reference image from the matched cluster.
"""

__version__ = "0.1.0"
