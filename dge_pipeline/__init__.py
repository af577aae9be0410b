"""
Bulk RNA-seq Differential Expression Pipeline

A modular pipeline with 5 agents:
1. Preprocessing (load, align, drop zero-count genes, CPM)
2. edgeR (TMM, dispersion estimation, quasi-likelihood F-test)
3. DESeq2 (negative binomial GLM, Wald test)
4. Method comparison (edgeR vs DESeq2 concordance)
5. Visualization (PCA, volcano, MA, heatmap)

Each agent has clear input/output specs and can be run independently.
"""

__version__ = "1.0.0"

from .orchestrator import DGEPipeline, create_sample_data

__all__ = ["DGEPipeline", "create_sample_data"]
