"""
Agent 4: Method Comparison

Compares the edgeR and DESeq2 results gene by gene.

Input:
- edger_all_results.csv, edger_significant.csv: From Agent 2
- deseq2_all_results.csv, deseq2_significant.csv: From Agent 3

Output:
- method_comparison.csv: Per-gene log2FC/padj from both methods and agreement category
- comparison_summary.json: Overlap counts, Jaccard index, log2FC correlation
- meta_agent4_comparison.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional

from scipy import stats

from ..utils.base_agent import BaseAgent
from ..utils.io import GENE_DTYPES

METHODS = ("edger", "deseq2")


def classify_agreement(in_edger: pd.Series, in_deseq2: pd.Series) -> pd.Series:
    """Label each gene by which methods call it significant."""
    category = np.select(
        [in_edger & in_deseq2, in_edger & ~in_deseq2, ~in_edger & in_deseq2],
        ["both", "edger_only", "deseq2_only"],
        default="neither"
    )
    return pd.Series(category, index=in_edger.index)


class ComparisonAgent(BaseAgent):
    """Agent for comparing edgeR and DESeq2 calls."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "padj_cutoff": 0.05,
            "log2fc_cutoff": 1.0,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent4_comparison", input_dir, output_dir, merged_config)

        self.all_results: Dict[str, pd.DataFrame] = {}
        self.significant: Dict[str, pd.DataFrame] = {}

    def validate_inputs(self) -> bool:
        """Both methods' result tables must be present."""
        for method in METHODS:
            all_df = self.load_csv(f"{method}_all_results.csv", required=False, dtype=GENE_DTYPES)
            sig_df = self.load_csv(f"{method}_significant.csv", required=False, dtype=GENE_DTYPES)
            if all_df is None or sig_df is None:
                self.logger.error(f"No {method} results found")
                return False
            self.all_results[method] = all_df
            self.significant[method] = sig_df

        return True

    def run(self) -> Dict[str, Any]:
        """Merge results and compute agreement statistics."""
        edger = self.all_results["edger"][['gene_id', 'log2FC', 'padj']]
        deseq2 = self.all_results["deseq2"][['gene_id', 'log2FC', 'padj']]

        merged = edger.merge(
            deseq2, on='gene_id', how='outer', suffixes=('_edger', '_deseq2')
        )

        sig_edger = set(self.significant["edger"]['gene_id'])
        sig_deseq2 = set(self.significant["deseq2"]['gene_id'])

        merged['significant_edger'] = merged['gene_id'].isin(sig_edger)
        merged['significant_deseq2'] = merged['gene_id'].isin(sig_deseq2)
        merged['agreement'] = classify_agreement(
            merged['significant_edger'], merged['significant_deseq2']
        )

        # Same direction when both methods report a fold change
        both_fc = merged[['log2FC_edger', 'log2FC_deseq2']].notna().all(axis=1)
        merged['same_direction'] = pd.Series(pd.NA, index=merged.index, dtype="boolean")
        merged.loc[both_fc, 'same_direction'] = (
            np.sign(merged.loc[both_fc, 'log2FC_edger']) ==
            np.sign(merged.loc[both_fc, 'log2FC_deseq2'])
        )

        merged = merged.sort_values(['agreement', 'gene_id']).reset_index(drop=True)
        self.save_csv(merged, "method_comparison.csv")

        shared = merged[both_fc]
        if len(shared) >= 3:
            rho, rho_p = stats.spearmanr(shared['log2FC_edger'], shared['log2FC_deseq2'])
            rho, rho_p = float(rho), float(rho_p)
        else:
            self.logger.warning("Fewer than 3 shared genes, skipping log2FC correlation")
            rho, rho_p = None, None

        union = sig_edger | sig_deseq2
        intersection = sig_edger & sig_deseq2
        jaccard = len(intersection) / len(union) if union else None

        counts = merged['agreement'].value_counts()
        summary = {
            "genes_compared": int(len(merged)),
            "genes_tested_by_both": int(len(shared)),
            "significant_edger": len(sig_edger),
            "significant_deseq2": len(sig_deseq2),
            "significant_both": int(counts.get("both", 0)),
            "edger_only": int(counts.get("edger_only", 0)),
            "deseq2_only": int(counts.get("deseq2_only", 0)),
            "jaccard_index": jaccard,
            "log2fc_spearman_rho": rho,
            "log2fc_spearman_pvalue": rho_p,
            "discordant_direction": int((~merged['same_direction'].fillna(True)).sum()),
        }
        self.save_json(summary, "comparison_summary.json")

        self.logger.info("Method Comparison Complete:")
        self.logger.info(f"  Significant in both: {summary['significant_both']}")
        self.logger.info(f"  edgeR only: {summary['edger_only']}")
        self.logger.info(f"  DESeq2 only: {summary['deseq2_only']}")
        if rho is not None:
            self.logger.info(f"  log2FC Spearman rho: {rho:.3f}")

        return summary

    def validate_outputs(self) -> bool:
        for filename in ["method_comparison.csv", "comparison_summary.json"]:
            if not (self.output_dir / filename).exists():
                self.logger.error(f"Missing output file: {filename}")
                return False
        return True
