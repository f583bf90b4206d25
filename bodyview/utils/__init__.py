"""
Utility modules for bodypart view classification.

Contains PHI-safe logging, configuration management and vector math.
"""

from .logging import get_logger, phi_safe_identifier
from .config import Config, get_default_config

__all__ = ['get_logger', 'phi_safe_identifier', 'Config', 'get_default_config']
