"""
Agent 5: Visualization

Generates diagnostic figures from preprocessing and DE results.

Input:
- normalized_counts.csv: From Agent 1 (CPM)
- sample_metadata.csv: From Agent 1
- edger_all_results.csv, edger_significant.csv: From Agent 2 (optional)
- deseq2_all_results.csv, deseq2_significant.csv: From Agent 3 (optional)

Output:
- figures/pca_plot.png
- figures/volcano_<method>.png
- figures/ma_<method>.png
- figures/heatmap_top_genes.png
- meta_agent5_visualization.json
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt
import seaborn as sns

from ..utils.base_agent import BaseAgent
from ..utils.io import GENE_DTYPES, SAMPLE_ID_COLUMN, frame_to_counts

METHOD_LABELS = {"deseq2": "DESeq2", "edger": "edgeR"}

COLORS = {'Not Significant': 'lightgray', 'Up': '#E74C3C', 'Down': '#3498DB'}


def log_cpm(cpm: pd.DataFrame) -> pd.DataFrame:
    return np.log2(cpm + 1)


def top_variable_genes(expr: pd.DataFrame, n: int) -> pd.DataFrame:
    """Rows of expr with the highest variance across samples."""
    if n and len(expr) > n:
        keep = expr.var(axis=1).nlargest(n).index
        return expr.loc[keep]
    return expr


def classify_significance(
    df: pd.DataFrame,
    padj_cutoff: float,
    log2fc_cutoff: float
) -> pd.Series:
    significance = pd.Series('Not Significant', index=df.index)
    significance[(df['padj'] < padj_cutoff) & (df['log2FC'] > log2fc_cutoff)] = 'Up'
    significance[(df['padj'] < padj_cutoff) & (df['log2FC'] < -log2fc_cutoff)] = 'Down'
    return significance


class VisualizationAgent(BaseAgent):
    """Agent for generating diagnostic plots."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "figure_format": ["png"],
            "dpi": 300,
            "style": "whitegrid",
            "color_palette": "RdBu_r",
            "figsize": {
                "volcano": (10, 8),
                "ma": (10, 8),
                "heatmap": (12, 10),
                "pca": (10, 8),
            },
            "condition_column": "condition",
            "padj_cutoff": 0.05,
            "log2fc_cutoff": 1.0,
            "pca_top_genes": 500,
            "top_genes_heatmap": 50,
            "label_top_genes": 10
        }

        merged_config = {**default_config, **(config or {})}
        if isinstance(merged_config["figure_format"], str):
            merged_config["figure_format"] = [merged_config["figure_format"]]
        super().__init__("agent5_visualization", input_dir, output_dir, merged_config)

        # Create figures subdirectory
        self.figures_dir = self.output_dir / "figures"
        self.figures_dir.mkdir(exist_ok=True)

        self.norm_counts: Optional[pd.DataFrame] = None
        self.metadata: Optional[pd.DataFrame] = None
        self.deg_all: Dict[str, pd.DataFrame] = {}
        self.deg_sig: Dict[str, pd.DataFrame] = {}

        # Set style
        sns.set_style(self.config["style"])
        plt.rcParams['font.size'] = 12
        plt.rcParams['axes.labelsize'] = 14
        plt.rcParams['axes.titlesize'] = 16

    def validate_inputs(self) -> bool:
        """Validate input files."""
        norm_df = self.load_csv("normalized_counts.csv", required=False, dtype=GENE_DTYPES)
        if norm_df is not None:
            self.norm_counts = frame_to_counts(norm_df)

        meta_df = self.load_csv("sample_metadata.csv", required=False, dtype=str)
        if meta_df is not None:
            self.metadata = meta_df.set_index(SAMPLE_ID_COLUMN)

        for method in METHOD_LABELS:
            all_df = self.load_csv(f"{method}_all_results.csv", required=False, dtype=GENE_DTYPES)
            if all_df is None:
                continue
            self.deg_all[method] = all_df

            sig_df = self.load_csv(f"{method}_significant.csv", required=False, dtype=GENE_DTYPES)
            if sig_df is not None:
                self.deg_sig[method] = sig_df

        # Need at least something to draw
        if self.norm_counts is None and not self.deg_all:
            self.logger.error("No normalized counts or DEG results found")
            return False

        return True

    def _save_figure(self, fig: plt.Figure, name: str) -> List[str]:
        """Save figure in multiple formats."""
        saved_files = []
        for fmt in self.config["figure_format"]:
            filepath = self.figures_dir / f"{name}.{fmt}"
            fig.savefig(filepath, dpi=self.config["dpi"], bbox_inches='tight',
                        facecolor='white', edgecolor='none')
            saved_files.append(str(filepath))
            self.logger.info(f"Saved {filepath.name}")
        plt.close(fig)
        return saved_files

    def _plot_pca(self) -> Optional[List[str]]:
        """Generate PCA plot of samples on log-CPM."""
        if self.norm_counts is None:
            self.logger.warning("Skipping PCA - no normalized counts")
            return None

        if self.norm_counts.shape[1] < 2:
            self.logger.warning("Skipping PCA - fewer than 2 samples")
            return None

        self.logger.info("Generating PCA plot...")

        from sklearn.decomposition import PCA

        expr = top_variable_genes(log_cpm(self.norm_counts), self.config["pca_top_genes"])

        # Samples x genes, centered per gene
        expr_t = expr.T
        n_components = min(2, expr_t.shape[0], expr_t.shape[1])
        pca = PCA(n_components=n_components)
        pca_result = pca.fit_transform(expr_t.values - expr_t.values.mean(axis=0))
        if n_components < 2:
            pca_result = np.column_stack([pca_result, np.zeros(len(pca_result))])
        variance = list(pca.explained_variance_ratio_) + [0.0] * (2 - n_components)

        pca_df = pd.DataFrame({
            'PC1': pca_result[:, 0],
            'PC2': pca_result[:, 1],
            'sample': expr_t.index
        })

        fig, ax = plt.subplots(figsize=self.config["figsize"]["pca"])

        condition_col = self.config["condition_column"]
        if self.metadata is not None and condition_col in self.metadata.columns:
            pca_df['condition'] = pca_df['sample'].map(self.metadata[condition_col])
            conditions = pca_df['condition'].dropna().unique()
            colors = sns.color_palette("Set1", len(conditions))

            for cond, color in zip(conditions, colors):
                mask = pca_df['condition'] == cond
                ax.scatter(pca_df.loc[mask, 'PC1'], pca_df.loc[mask, 'PC2'],
                           c=[color], s=100, label=cond, alpha=0.8,
                           edgecolors='white', linewidths=1)
            ax.legend(loc='best')
        else:
            ax.scatter(pca_df['PC1'], pca_df['PC2'], s=100, alpha=0.7)

        # Label points
        for _, row in pca_df.iterrows():
            ax.annotate(row['sample'], (row['PC1'], row['PC2']),
                        xytext=(5, 5), textcoords='offset points', fontsize=8)

        ax.set_xlabel(f'PC1 ({variance[0]*100:.1f}%)')
        ax.set_ylabel(f'PC2 ({variance[1]*100:.1f}%)')
        ax.set_title(f'PCA: log2 CPM, top {len(expr)} variable genes')

        ax.axhline(y=0, color='gray', linestyle='--', alpha=0.3)
        ax.axvline(x=0, color='gray', linestyle='--', alpha=0.3)

        return self._save_figure(fig, "pca_plot")

    def _plot_volcano(self, method: str) -> Optional[List[str]]:
        """Generate volcano plot for one method."""
        label = METHOD_LABELS[method]
        self.logger.info(f"Generating {label} volcano plot...")

        fig, ax = plt.subplots(figsize=self.config["figsize"]["volcano"])

        df = self.deg_all[method].copy()
        df['neg_log10_padj'] = -np.log10(df['padj'].clip(lower=1e-300))

        padj_cutoff = self.config["padj_cutoff"]
        log2fc_cutoff = self.config["log2fc_cutoff"]
        df['significance'] = classify_significance(df, padj_cutoff, log2fc_cutoff)

        for sig, color in COLORS.items():
            subset = df[df['significance'] == sig]
            ax.scatter(subset['log2FC'], subset['neg_log10_padj'],
                       c=color, alpha=0.6, s=20, label=sig)

        # Add significance lines
        ax.axhline(y=-np.log10(padj_cutoff), color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=log2fc_cutoff, color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=-log2fc_cutoff, color='gray', linestyle='--', alpha=0.5)

        # Label top genes
        deg_sig = self.deg_sig.get(method)
        if deg_sig is not None and len(deg_sig) > 0:
            top_genes = deg_sig.head(self.config["label_top_genes"])
            lookup = df.set_index('gene_id')
            for gene in top_genes['gene_id']:
                if gene in lookup.index:
                    ax.annotate(gene, (lookup.at[gene, 'log2FC'], lookup.at[gene, 'neg_log10_padj']),
                                fontsize=8, ha='center', va='bottom')

        ax.set_xlabel('log2 Fold Change')
        ax.set_ylabel('-log10 Adjusted P-value')
        ax.set_title(f'Volcano Plot: {label}')
        ax.legend(loc='upper right')

        n_up = (df['significance'] == 'Up').sum()
        n_down = (df['significance'] == 'Down').sum()
        ax.text(0.02, 0.98, f'Up: {n_up}\nDown: {n_down}',
                transform=ax.transAxes, verticalalignment='top',
                fontsize=10, bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

        return self._save_figure(fig, f"volcano_{method}")

    def _plot_ma(self, method: str) -> Optional[List[str]]:
        """Generate MA plot (mean expression vs log2FC) for one method."""
        df = self.deg_all[method].copy()
        label = METHOD_LABELS[method]

        if 'baseMean' in df.columns:
            df['mean_expr'] = np.log10(df['baseMean'] + 1)
            xlabel = 'log10 Mean Normalized Count'
        elif 'logCPM' in df.columns:
            df['mean_expr'] = df['logCPM']
            xlabel = 'Average log2 CPM'
        else:
            self.logger.warning(f"Skipping {label} MA plot - no mean expression column")
            return None

        self.logger.info(f"Generating {label} MA plot...")

        df['significance'] = classify_significance(
            df, self.config["padj_cutoff"], self.config["log2fc_cutoff"]
        )

        fig, ax = plt.subplots(figsize=self.config["figsize"]["ma"])

        for sig, color in COLORS.items():
            subset = df[df['significance'] == sig]
            ax.scatter(subset['mean_expr'], subset['log2FC'],
                       c=color, alpha=0.6, s=20, label=f'{sig} ({len(subset)})')

        log2fc_cutoff = self.config["log2fc_cutoff"]
        ax.axhline(y=0, color='black', linestyle='-', alpha=0.3)
        ax.axhline(y=log2fc_cutoff, color='gray', linestyle='--', alpha=0.5)
        ax.axhline(y=-log2fc_cutoff, color='gray', linestyle='--', alpha=0.5)

        ax.set_xlabel(xlabel)
        ax.set_ylabel('log2 Fold Change')
        ax.set_title(f'MA Plot: {label}')
        ax.legend(loc='upper right')

        return self._save_figure(fig, f"ma_{method}")

    def _plot_heatmap(self) -> Optional[List[str]]:
        """Generate heatmap of top DEGs from the primary method."""
        method = next((m for m in ("deseq2", "edger") if m in self.deg_sig), None)
        if self.norm_counts is None or method is None:
            self.logger.warning("Skipping heatmap - missing data")
            return None

        deg_sig = self.deg_sig[method]
        n_genes = min(self.config["top_genes_heatmap"], len(deg_sig))
        top_genes = [g for g in deg_sig.head(n_genes)['gene_id'] if g in self.norm_counts.index]

        if len(top_genes) == 0:
            self.logger.warning("Skipping heatmap - no significant genes")
            return None

        self.logger.info(f"Generating heatmap of top {len(top_genes)} {METHOD_LABELS[method]} genes...")

        expr = log_cpm(self.norm_counts.loc[top_genes])

        # Z-score per gene
        expr_zscore = expr.apply(lambda x: (x - x.mean()) / x.std(), axis=1).fillna(0)

        condition_col = self.config["condition_column"]
        if self.metadata is not None and condition_col in self.metadata.columns:
            order = self.metadata.sort_values(condition_col, kind='mergesort').index
            expr_zscore = expr_zscore[[s for s in order if s in expr_zscore.columns]]

        fig, ax = plt.subplots(figsize=self.config["figsize"]["heatmap"])

        sns.heatmap(expr_zscore, cmap=self.config["color_palette"],
                    center=0, ax=ax, xticklabels=True,
                    yticklabels=len(top_genes) <= 50,
                    cbar_kws={'label': 'Z-score'})

        ax.set_title(f'Heatmap: Top {len(top_genes)} DEGs ({METHOD_LABELS[method]})')
        ax.set_xlabel('Samples')
        ax.set_ylabel('Genes')

        plt.tight_layout()

        return self._save_figure(fig, "heatmap_top_genes")

    def run(self) -> Dict[str, Any]:
        """Generate all visualizations."""
        generated_figures = []
        failed_figures = []

        figure_functions = [("pca_plot", self._plot_pca)]
        for method in self.deg_all:
            figure_functions.append((f"volcano_{method}", lambda m=method: self._plot_volcano(m)))
            figure_functions.append((f"ma_{method}", lambda m=method: self._plot_ma(m)))
        figure_functions.append(("heatmap_top_genes", self._plot_heatmap))

        for name, func in figure_functions:
            try:
                result = func()
                if result:
                    generated_figures.extend(result)
                else:
                    failed_figures.append(name)
            except Exception as e:
                self.logger.error(f"Error generating {name}: {e}")
                plt.close('all')
                failed_figures.append(name)

        self.logger.info("Visualization Complete:")
        self.logger.info(f"  Generated: {len(generated_figures)} files")
        self.logger.info(f"  Failed/Skipped: {len(failed_figures)}")

        return {
            "figures_generated": generated_figures,
            "failed_figures": failed_figures,
            "total_generated": len(generated_figures)
        }

    def validate_outputs(self) -> bool:
        """Validate visualization outputs."""
        if not self.figures_dir.exists():
            self.logger.error("Figures directory not created")
            return False

        if not any(self.figures_dir.iterdir()):
            self.logger.warning("No figures generated")

        return True
