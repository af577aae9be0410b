"""
Agent 2: edgeR Differential Expression

Uses edgeR via rpy2: TMM normalization, common/trended/tagwise dispersion
estimation and a quasi-likelihood F-test (or likelihood ratio / exact test).

Input:
- filtered_counts.csv: From Agent 1
- sample_metadata.csv: From Agent 1

Output:
- edger_all_results.csv: Full edgeR results
- edger_significant.csv: Filtered significant DEGs
- edger_normalized_counts.csv: TMM-normalized CPM
- meta_agent2_edger.json: Execution metadata
"""

import math
import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..utils.de_agent import DE_DEFAULT_CONFIG, DifferentialExpressionAgent
from ..utils import r_bridge

EDGER_TESTS = ("qlf", "lrt", "exact")

# Runs the whole edgeR workflow inside R and hands back plain data.frames.
EDGER_R_FUNCTION = """
function(counts, group, reference, treatment, test, filter_by_expr, robust) {
    suppressPackageStartupMessages(library(edgeR))
    counts <- as.matrix(counts)
    group <- factor(group, levels = c(reference, treatment))
    design <- model.matrix(~group)

    y <- DGEList(counts = counts, group = group)
    if (filter_by_expr) {
        keep <- filterByExpr(y, design = design)
        y <- y[keep, , keep.lib.sizes = FALSE]
    }
    y <- calcNormFactors(y, method = "TMM")
    y <- estimateDisp(y, design, robust = robust)

    if (test == "qlf") {
        fit <- glmQLFit(y, design, robust = robust)
        res <- glmQLFTest(fit, coef = 2)
    } else if (test == "lrt") {
        fit <- glmFit(y, design)
        res <- glmLRT(fit, coef = 2)
    } else {
        res <- exactTest(y, pair = c(reference, treatment))
    }

    tab <- topTags(res, n = Inf, sort.by = "none")$table
    tab$tagwise_dispersion <- y$tagwise.dispersion
    tab$trended_dispersion <- y$trended.dispersion

    list(
        table = tab,
        cpm = as.data.frame(cpm(y, normalized.lib.sizes = TRUE)),
        norm_factors = y$samples$norm.factors,
        common_dispersion = y$common.dispersion
    )
}
"""


class EdgeRAgent(DifferentialExpressionAgent):
    """Agent for edgeR-based differential expression analysis."""

    method = "edger"

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            **DE_DEFAULT_CONFIG,
            "edger_test": "qlf",  # qlf | lrt | exact
            "edger_filter_by_expr": True,
            "edger_robust": True,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent2_edger", input_dir, output_dir, merged_config)

    def validate_inputs(self) -> bool:
        if self.config["edger_test"] not in EDGER_TESTS:
            self.logger.error(
                f"Unknown edger_test '{self.config['edger_test']}', expected one of {EDGER_TESTS}"
            )
            return False
        return super().validate_inputs()

    def _tidy_results(self, table: pd.DataFrame) -> pd.DataFrame:
        """Rename topTags columns to the pipeline's result schema."""
        col_mapping = {
            'logFC': 'log2FC',
            'logCPM': 'logCPM',
            'F': 'F',
            'LR': 'LR',
            'PValue': 'pvalue',
            'FDR': 'padj',
        }
        results_df = table.rename(columns=col_mapping)

        if 'gene_id' not in results_df.columns:
            results_df.insert(0, 'gene_id', results_df.index.astype(str))

        stat_cols = [c for c in ('F', 'LR') if c in results_df.columns]
        expected_cols = (
            ['gene_id', 'log2FC', 'logCPM'] + stat_cols + ['pvalue', 'padj'] +
            [c for c in ('tagwise_dispersion', 'trended_dispersion') if c in results_df.columns]
        )
        return results_df[expected_cols].reset_index(drop=True)

    def _fit(self) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, Any]]:
        """Run edgeR via rpy2."""
        r_bridge.require_r_packages("edgeR")

        self.logger.info("Initializing R environment...")
        run_edger = r_bridge.r_function(EDGER_R_FUNCTION)

        condition_col = self.config["condition_column"]
        treatment, reference = self.contrast
        test = self.config["edger_test"]

        self.logger.info("Converting to R objects...")
        counts_r = r_bridge.to_r_frame(self.count_matrix.astype(int))
        group_r = r_bridge.r_strings(self.metadata[condition_col])

        self.logger.info(
            f"Running edgeR (test={test}, filterByExpr={self.config['edger_filter_by_expr']}, "
            f"robust={self.config['edger_robust']})..."
        )
        res = run_edger(
            counts_r,
            group_r,
            reference,
            treatment,
            test,
            bool(self.config["edger_filter_by_expr"]),
            bool(self.config["edger_robust"])
        )

        table = r_bridge.to_pandas_frame(res.rx2("table"))
        cpm_df = r_bridge.to_pandas_frame(res.rx2("cpm"))
        norm_factors = [float(x) for x in res.rx2("norm_factors")]
        common_dispersion = float(res.rx2("common_dispersion")[0])

        self.logger.info(f"edgeR result columns: {list(table.columns)}")
        self.logger.info(f"Genes tested: {len(table)} of {len(self.count_matrix)}")
        self.logger.info(
            f"Common dispersion: {common_dispersion:.4f} "
            f"(BCV {math.sqrt(common_dispersion):.4f})"
        )

        results_df = self._tidy_results(table)

        cpm_df.columns = list(self.count_matrix.columns)
        cpm_df.insert(0, 'gene_id', cpm_df.index.astype(str))
        cpm_df = cpm_df.reset_index(drop=True)

        extra = {
            "edger_test": test,
            "genes_tested": int(len(results_df)),
            "common_dispersion": common_dispersion,
            "bcv": math.sqrt(common_dispersion),
            "norm_factors": dict(zip(self.count_matrix.columns, norm_factors)),
            "median_tagwise_dispersion": (
                float(np.median(results_df['tagwise_dispersion']))
                if 'tagwise_dispersion' in results_df.columns else None
            ),
        }

        return results_df, cpm_df, extra
