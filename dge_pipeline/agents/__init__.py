"""
Pipeline Agents

Each agent handles a specific step of the analysis:
- Agent 1: Preprocessing
- Agent 2: edgeR
- Agent 3: DESeq2
- Agent 4: Method comparison
- Agent 5: Visualization
"""

from .agent1_preprocess import PreprocessAgent
from .agent2_edger import EdgeRAgent
from .agent3_deseq2 import DESeq2Agent
from .agent4_comparison import ComparisonAgent
from .agent5_visualization import VisualizationAgent

__all__ = [
    "PreprocessAgent",
    "EdgeRAgent",
    "DESeq2Agent",
    "ComparisonAgent",
    "VisualizationAgent",
]
