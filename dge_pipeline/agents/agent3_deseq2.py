"""
Agent 3: DESeq2 Differential Expression

Negative binomial GLM with a Wald test on the configured contrast.

Backends:
- "pydeseq2": the PyDESeq2 package (default, no R required)
- "r": Bioconductor DESeq2 via rpy2

Input:
- filtered_counts.csv: From Agent 1
- sample_metadata.csv: From Agent 1

Output:
- deseq2_all_results.csv: Full DESeq2 results
- deseq2_significant.csv: Filtered significant DEGs
- deseq2_normalized_counts.csv: Median-of-ratios normalized counts
- meta_agent3_deseq2.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..utils.de_agent import DE_DEFAULT_CONFIG, DifferentialExpressionAgent
from ..utils import r_bridge

DESEQ2_BACKENDS = ("pydeseq2", "r")

RESULT_COLUMNS = ['gene_id', 'baseMean', 'log2FC', 'lfcSE', 'stat', 'pvalue', 'padj']


class DESeq2Agent(DifferentialExpressionAgent):
    """Agent for DESeq2-based differential expression analysis."""

    method = "deseq2"

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            **DE_DEFAULT_CONFIG,
            "deseq2_backend": "pydeseq2",
            "paired_column": None,  # Column for paired samples (e.g., "donor")
            "shrink_lfc": False,
            "n_cpus": 1,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent3_deseq2", input_dir, output_dir, merged_config)

    def validate_inputs(self) -> bool:
        if self.config["deseq2_backend"] not in DESEQ2_BACKENDS:
            self.logger.error(
                f"Unknown deseq2_backend '{self.config['deseq2_backend']}', "
                f"expected one of {DESEQ2_BACKENDS}"
            )
            return False
        if not super().validate_inputs():
            return False

        paired_col = self.config.get("paired_column")
        if paired_col and paired_col not in self.metadata.columns:
            self.logger.error(f"Paired column '{paired_col}' not in metadata")
            return False
        return True

    def _design_formula(self) -> str:
        condition_col = self.config["condition_column"]
        paired_col = self.config.get("paired_column")
        if paired_col:
            self.logger.info(f"Using PAIRED design: ~ {paired_col} + {condition_col}")
            return f"~ {paired_col} + {condition_col}"
        self.logger.info(f"Using UNPAIRED design: ~ {condition_col}")
        return f"~ {condition_col}"

    def _condition_levels(self, meta_df: pd.DataFrame) -> pd.DataFrame:
        """Make the condition column a categorical with the reference level first."""
        condition_col = self.config["condition_column"]
        treatment, reference = self.contrast
        others = sorted(set(meta_df[condition_col]) - {treatment, reference})
        meta_df = meta_df.copy()
        meta_df[condition_col] = pd.Categorical(
            meta_df[condition_col], categories=[reference, treatment] + others
        )
        return meta_df

    def _tidy_results(
        self,
        results_df: pd.DataFrame,
        gene_ids,
        wald_stat: Optional[pd.Series] = None
    ) -> pd.DataFrame:
        """Map DESeq2 result columns to the pipeline's result schema.

        Shrunken estimates come without the Wald statistic; 'stat' is then
        taken from wald_stat (the unshrunk test) or left empty.
        """
        col_mapping = {
            'baseMean': 'baseMean',
            'log2FoldChange': 'log2FC',
            'lfcSE': 'lfcSE',
            'stat': 'stat',
            'pvalue': 'pvalue',
            'padj': 'padj'
        }
        results_df = results_df.rename(columns=col_mapping).reset_index(drop=True)

        if wald_stat is not None:
            results_df['stat'] = np.asarray(wald_stat, dtype=float)
        elif 'stat' not in results_df.columns:
            results_df['stat'] = np.nan

        results_df.insert(0, 'gene_id', [str(g) for g in gene_ids])
        return results_df[RESULT_COLUMNS]

    def _run_pydeseq2(self) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, Any]]:
        """Run DESeq2 with PyDESeq2."""
        from pydeseq2.dds import DeseqDataSet
        from pydeseq2.default_inference import DefaultInference
        from pydeseq2.ds import DeseqStats

        condition_col = self.config["condition_column"]
        treatment, reference = self.contrast

        # PyDESeq2 expects samples x genes
        counts_t = self.count_matrix.T.astype(int)
        columns = [condition_col]
        if self.config.get("paired_column"):
            columns.insert(0, self.config["paired_column"])
        meta_df = self._condition_levels(
            self.metadata.loc[counts_t.index, columns].astype(str)
        )

        design = self._design_formula()
        inference = DefaultInference(n_cpus=self.config["n_cpus"])

        self.logger.info("Creating DeseqDataSet...")
        dds = DeseqDataSet(
            counts=counts_t,
            metadata=meta_df,
            design=design,
            inference=inference,
            quiet=True
        )

        self.logger.info("Running DESeq2 (this may take a while)...")
        dds.deseq2()

        self.logger.info(f"Extracting results for contrast: {treatment} vs {reference}")
        ds = DeseqStats(
            dds,
            contrast=[condition_col, treatment, reference],
            alpha=self.config["padj_cutoff"],
            inference=inference,
            quiet=True
        )
        ds.summary()
        wald_stat = ds.results_df['stat'].copy()

        shrunk = False
        if self.config["shrink_lfc"]:
            coeff = self._find_lfc_coefficient(list(dds.varm["LFC"].columns))
            if coeff:
                try:
                    self.logger.info(f"Applying LFC shrinkage on coefficient: {coeff}")
                    ds.lfc_shrink(coeff=coeff)
                    shrunk = True
                except Exception as e:
                    self.logger.warning(f"LFC shrinkage failed: {e}. Using unshrunk LFC.")
            else:
                self.logger.warning(f"Could not find coefficient for {self.contrast}, using unshrunk LFC")

        results_df = self._tidy_results(
            ds.results_df, ds.results_df.index,
            wald_stat=wald_stat.reindex(ds.results_df.index)
        )

        norm_counts = pd.DataFrame(
            np.asarray(dds.layers["normed_counts"]).T,
            index=counts_t.columns,
            columns=counts_t.index
        )
        norm_counts.insert(0, 'gene_id', norm_counts.index.astype(str))
        norm_counts = norm_counts.reset_index(drop=True)

        extra = {
            "backend": "pydeseq2",
            "design": design,
            "lfc_shrunk": shrunk,
            "size_factors": self._size_factors(dds, counts_t.index),
        }
        return results_df, norm_counts, extra

    def _find_lfc_coefficient(self, coefficients) -> Optional[str]:
        """Pick the coefficient for treatment over reference.

        Only exact names count: "<col>[T.<treatment>]" (PyDESeq2) or
        "<col>_<treatment>_vs_<reference>" (DESeq2 in R). Both assume the
        reference level was set first, see _condition_levels.
        """
        treatment, reference = self.contrast
        condition_col = self.config["condition_column"]
        wanted = {
            f"{condition_col}[T.{treatment}]",
            f"{condition_col}_{treatment}_vs_{reference}",
        }
        for name in coefficients:
            if name in wanted:
                return name
        return None

    @staticmethod
    def _size_factors(dds, samples) -> Dict[str, float]:
        if "size_factors" in dds.obs.columns:
            values = dds.obs["size_factors"]
        else:
            values = dds.obsm["size_factors"]
        return {str(s): float(v) for s, v in zip(samples, np.asarray(values))}

    def _run_r_deseq2(self) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, Any]]:
        """Run Bioconductor DESeq2 via rpy2."""
        r_bridge.require_r_packages("DESeq2")
        ro = r_bridge.ro

        self.logger.info("Initializing R environment...")
        base = r_bridge.import_r_package('base')
        deseq2 = r_bridge.import_r_package('DESeq2')
        bioc_generics = r_bridge.import_r_package('BiocGenerics')

        condition_col = self.config["condition_column"]
        treatment, reference = self.contrast

        meta_df = self._condition_levels(
            self.metadata.loc[self.count_matrix.columns].astype(str)
        )

        self.logger.info("Converting to R objects...")
        counts_r = r_bridge.to_r_frame(self.count_matrix.astype(int))
        meta_r = r_bridge.to_r_frame(meta_df)

        design = self._design_formula()
        self.logger.info("Creating DESeqDataSet...")
        dds = deseq2.DESeqDataSetFromMatrix(
            countData=counts_r,
            colData=meta_r,
            design=ro.Formula(design)
        )

        self.logger.info("Running DESeq2 (this may take a while)...")
        dds = deseq2.DESeq(dds)

        self.logger.info(f"Extracting results for contrast: {treatment} vs {reference}")
        res = deseq2.results(
            dds,
            contrast=r_bridge.r_strings([condition_col, treatment, reference]),
            alpha=self.config["padj_cutoff"]
        )
        wald_stat = r_bridge.to_pandas_frame(base.as_data_frame(res))["stat"]

        shrunk = False
        if self.config["shrink_lfc"]:
            try:
                self.logger.info("Applying apeglm LFC shrinkage...")
                r_bridge.require_r_packages("apeglm")

                result_names = list(deseq2.resultsNames(dds))
                self.logger.info(f"Available coefficients: {result_names}")

                coef = self._find_lfc_coefficient(result_names)
                if coef:
                    self.logger.info(f"Using coefficient: {coef}")
                    res = deseq2.lfcShrink(dds, coef=coef, type="apeglm")
                    shrunk = True
                else:
                    self.logger.warning(f"Could not find matching coefficient for {self.contrast}, using unshrunk LFC")
            except Exception as e:
                self.logger.warning(f"apeglm shrinkage failed: {e}. Using unshrunk LFC.")

        self.logger.info("Getting normalized counts...")
        norm_counts = bioc_generics.counts(dds, normalized=True)

        results_df = r_bridge.to_pandas_frame(base.as_data_frame(res))
        norm_counts_df = r_bridge.to_pandas_frame(base.as_data_frame(norm_counts))

        self.logger.info(f"DESeq2 result columns: {list(results_df.columns)}")

        results_df = self._tidy_results(
            results_df, self.count_matrix.index, wald_stat=wald_stat.to_numpy()
        )
        norm_counts_df.columns = list(self.count_matrix.columns)
        norm_counts_df.insert(0, 'gene_id', list(self.count_matrix.index))
        norm_counts_df = norm_counts_df.reset_index(drop=True)

        size_factors = [float(x) for x in bioc_generics.sizeFactors(dds)]

        extra = {
            "backend": "r",
            "design": design,
            "lfc_shrunk": shrunk,
            "size_factors": dict(zip(self.count_matrix.columns, size_factors)),
        }
        return results_df, norm_counts_df, extra

    def _fit(self) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, Any]]:
        backend = self.config["deseq2_backend"]
        self.logger.info(f"DESeq2 backend: {backend}")
        if backend == "r":
            return self._run_r_deseq2()
        return self._run_pydeseq2()
