"""
Core Components

Foundational pieces shared by every service:
- Configuration loaded from the environment
- Error taxonomy for the generation pipeline
"""

from .config import Config, get_config
from .errors import GenerationError

__all__ = ["Config", "get_config", "GenerationError"]
