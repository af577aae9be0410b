"""
Common base for the differential expression agents (edgeR, DESeq2).

Handles what both methods share: loading the filtered counts and aligned
metadata written by preprocessing, checking the contrast, and writing the
all/significant/normalized result tables.
"""

from abc import abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import pandas as pd

from .base_agent import BaseAgent
from .io import GENE_DTYPES, SAMPLE_ID_COLUMN, align_samples, frame_to_counts, resolve_contrast
from .results import direction_counts, select_significant

DE_DEFAULT_CONFIG = {
    "contrast": None,  # [treatment, reference]; inferred when two levels
    "condition_column": "condition",
    "padj_cutoff": 0.05,
    "log2fc_cutoff": 1.0,
}


class DifferentialExpressionAgent(BaseAgent):
    """Shared input/output handling for a DE method."""

    #: Short method name, used as output file prefix
    method: str = ""

    def __init__(
        self,
        agent_name: str,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        super().__init__(agent_name, input_dir, output_dir, config)

        self.count_matrix: Optional[pd.DataFrame] = None
        self.metadata: Optional[pd.DataFrame] = None
        self.contrast: Optional[list] = None

    @property
    def output_files(self) -> Dict[str, str]:
        return {
            "all": f"{self.method}_all_results.csv",
            "significant": f"{self.method}_significant.csv",
            "normalized": f"{self.method}_normalized_counts.csv",
        }

    def validate_inputs(self) -> bool:
        """Validate filtered counts and metadata."""
        counts_df = self.load_csv("filtered_counts.csv", dtype=GENE_DTYPES)
        meta_df = self.load_csv("sample_metadata.csv", dtype=str)

        condition_col = self.config["condition_column"]
        if condition_col not in meta_df.columns:
            self.logger.error(f"Condition column '{condition_col}' not in metadata")
            return False

        counts = frame_to_counts(counts_df)
        meta_df = meta_df.set_index(SAMPLE_ID_COLUMN)

        try:
            self.count_matrix, self.metadata = align_samples(counts, meta_df)
            self.contrast = resolve_contrast(
                self.metadata, condition_col, self.config["contrast"]
            )
        except ValueError as e:
            self.logger.error(str(e))
            return False

        conditions = self.metadata[condition_col]
        for level in self.contrast:
            n = int((conditions == level).sum())
            if n < 2:
                self.logger.warning(
                    f"Condition '{level}' has {n} sample(s); dispersion estimates "
                    "will be unreliable without replicates"
                )

        self.logger.info(f"Count matrix: {self.count_matrix.shape[0]} genes, {self.count_matrix.shape[1]} samples")
        self.logger.info(f"Contrast: {self.contrast[0]} vs {self.contrast[1]}")

        return True

    @abstractmethod
    def _fit(self) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, Any]]:
        """Run the method.

        Returns:
            (results_df with gene_id/log2FC/pvalue/padj columns,
             normalized counts with a leading gene_id column,
             extra result fields for the metadata)
        """

    def run(self) -> Dict[str, Any]:
        """Execute the DE method and write its tables."""
        results_df, norm_counts_df, extra = self._fit()

        self.logger.info(f"Results before dropna: {len(results_df)} rows")
        na_count = int(results_df['padj'].isna().sum())
        self.logger.info(f"NA padj values: {na_count}")

        # Remove NA padj values
        results_df = results_df.dropna(subset=['padj']).reset_index(drop=True)
        self.logger.info(f"Results after dropna: {len(results_df)} rows")

        files = self.output_files
        self.save_csv(results_df, files["all"])

        padj_cutoff = self.config["padj_cutoff"]
        log2fc_cutoff = self.config["log2fc_cutoff"]
        significant = select_significant(results_df, padj_cutoff, log2fc_cutoff)
        self.save_csv(significant, files["significant"])

        self.save_csv(norm_counts_df, files["normalized"])

        directions = direction_counts(significant)

        self.logger.info(f"{self.method} analysis complete:")
        self.logger.info(f"  Total genes analyzed: {len(results_df)}")
        self.logger.info(f"  Significant DEGs: {len(significant)}")
        self.logger.info(f"  Upregulated: {directions['up']}")
        self.logger.info(f"  Downregulated: {directions['down']}")

        return {
            "method_used": self.method,
            "contrast": self.contrast,
            "total_genes": int(len(results_df)),
            "na_padj_genes": na_count,
            "deg_count": int(len(significant)),
            "up_count": directions["up"],
            "down_count": directions["down"],
            "padj_cutoff": padj_cutoff,
            "log2fc_cutoff": log2fc_cutoff,
            **extra
        }

    def validate_outputs(self) -> bool:
        """Validate result tables."""
        for filename in self.output_files.values():
            if not (self.output_dir / filename).exists():
                self.logger.error(f"Missing output file: {filename}")
                return False

        sig_df = pd.read_csv(self.output_dir / self.output_files["significant"])

        if len(sig_df) == 0:
            self.logger.warning("No significant DEGs found (this may be expected)")

        if sig_df['padj'].isna().any():
            self.logger.error("NA values found in padj column")
            return False

        return True
