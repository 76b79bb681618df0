"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    ApiConfig,
    GlobalConfig,
    PipelineConfig,
    ProgressConfig,
    ServicesConfig,
    WorkerConfig,
)

__all__ = [
    "ApiConfig",
    "ConfigLocator",
    "ConfigRepository",
    "GlobalConfig",
    "PipelineConfig",
    "ProgressConfig",
    "ServicesConfig",
    "WorkerConfig",
]
