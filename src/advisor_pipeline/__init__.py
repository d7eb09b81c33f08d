"""Advisor pipeline package."""

from .config import PipelineConfig, Settings
from .executor import AdvisorChainExecutor
from .types import PipelineRequest, PipelineResponse

__all__ = [
    "AdvisorChainExecutor",
    "PipelineConfig",
    "PipelineRequest",
    "PipelineResponse",
    "Settings",
]
