"""
Value types for bodypart view classification.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, Any


class Category(Enum):
    """Anatomical regions of the MURA radiograph dataset."""

    ELBOW = "ELBOW"
    FINGER = "FINGER"
    FOREARM = "FOREARM"
    HAND = "HAND"
    HUMERUS = "HUMERUS"
    SHOULDER = "SHOULDER"
    WRIST = "WRIST"

    def dir_name(self, prefix: str = "XR_") -> str:
        """Name of this category's metadata directory (e.g. XR_HAND)."""
        return f"{prefix}{self.value}"

    @classmethod
    def parse(cls, text: str, prefix: str = "XR_") -> 'Category':
        """
        Parse a category from user input or a directory name.

        Args:
            text: "hand", "HAND" or "XR_HAND"
            prefix: Directory prefix to strip

        Returns:
            Matching Category

        Raises:
            ValueError: If the text names no known category
        """
        if isinstance(text, cls):
            return text

        name = str(text).strip().upper()
        if prefix and name.startswith(prefix.upper()):
            name = name[len(prefix):]

        try:
            return cls(name)
        except ValueError:
            raise ValueError(
                f"Unknown bodypart '{text}'. Must be one of {[c.value for c in cls]}"
            ) from None

    def __str__(self) -> str:
        return self.value


class ConfidenceLevel(IntEnum):
    """Discretized certainty of a classification; higher is more certain."""

    LOW = 0
    MEDIUM = 1
    HIGH = 2

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class BodypartView:
    """A view-cluster within one anatomical category."""

    category: Category
    label: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {'bodypart': self.category.value, 'label': self.label}


@dataclass(frozen=True)
class Classification:
    """Result of a nearest-centroid decision."""

    view: BodypartView
    confidence: ConfidenceLevel
    distance: float  # to the winning centroid
    margin: float  # relative gap to the runner-up, in [0, 1]

    @property
    def category(self) -> Category:
        return self.view.category

    @property
    def label(self) -> int:
        return self.view.label

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            **self.view.to_dict(),
            'confidence': self.confidence.name,
            'distance': round(self.distance, 6),
            'margin': round(self.margin, 4)
        }
