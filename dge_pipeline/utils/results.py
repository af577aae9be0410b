"""Shared handling of per-gene differential expression result tables."""

from typing import Dict

import numpy as np
import pandas as pd

SIGNIFICANT_COLUMNS = ['gene_id', 'log2FC', 'padj', 'direction']


def select_significant(
    results_df: pd.DataFrame,
    padj_cutoff: float = 0.05,
    log2fc_cutoff: float = 1.0
) -> pd.DataFrame:
    """Genes passing both cutoffs, with an up/down direction, sorted by padj."""
    significant = results_df[
        (results_df['padj'] < padj_cutoff) &
        (np.abs(results_df['log2FC']) > log2fc_cutoff)
    ].copy()

    significant['direction'] = np.where(significant['log2FC'] > 0, 'up', 'down')
    significant = significant.sort_values('padj', kind='mergesort')

    return significant[SIGNIFICANT_COLUMNS].reset_index(drop=True)


def direction_counts(significant: pd.DataFrame) -> Dict[str, int]:
    return {
        "up": int((significant['direction'] == 'up').sum()),
        "down": int((significant['direction'] == 'down').sum()),
    }
