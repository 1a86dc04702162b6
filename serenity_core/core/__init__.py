# Core infrastructure shared by the engine

from serenity_core.core.logging import setup_logging, setup_logging_from_settings

__all__ = [
    "setup_logging",
    "setup_logging_from_settings",
]
