"""Configuration management."""

from .engine_config import EngineConfig
from .global_config import GlobalConfig
from .local_config import Language, LocalConfig

__all__ = ["EngineConfig", "GlobalConfig", "Language", "LocalConfig"]
