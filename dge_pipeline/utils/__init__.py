"""Utility modules for the differential expression pipeline."""

from .base_agent import BaseAgent, AgentResult
from .de_agent import DifferentialExpressionAgent
from .results import select_significant, direction_counts

__all__ = [
    "BaseAgent",
    "AgentResult",
    "DifferentialExpressionAgent",
    "select_significant",
    "direction_counts",
]
