"""
Configuration Module

Deployment configuration supplied through environment variables.
"""

from kbengine.config.settings import (
    ChunkingSettings,
    EmbeddingSettings,
    IngestionSettings,
    ObservabilitySettings,
    QuerySettings,
    RerankerSettings,
    Settings,
    VectorStoreSettings,
    get_settings,
)

__all__ = [
    "Settings",
    "get_settings",
    "VectorStoreSettings",
    "EmbeddingSettings",
    "RerankerSettings",
    "ChunkingSettings",
    "IngestionSettings",
    "QuerySettings",
    "ObservabilitySettings",
]
