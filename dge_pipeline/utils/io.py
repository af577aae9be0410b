"""
Input readers and sample alignment.

Reads the three raw inputs of an analysis:
1. Sample list: newline-delimited sample names
2. Count matrix: tab-delimited genes x samples table, gene id in the first column
3. Sample metadata: either a metadata table or condition labels from config

and makes sure the count-matrix columns and metadata rows describe the same
samples in the same order.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

SAMPLE_ID_COLUMN = "sample_id"
GENE_ID_COLUMN = "gene_id"

# Keeps gene ids such as "00123" from being parsed as numbers
GENE_DTYPES = {GENE_ID_COLUMN: str}


def read_sample_names(path: Path) -> List[str]:
    """Read a newline-delimited list of sample names.

    Blank lines are skipped and surrounding whitespace is stripped.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Sample list not found: {path}")

    with open(path, 'r', encoding='utf-8') as f:
        names = [line.strip() for line in f if line.strip()]

    if not names:
        raise ValueError(f"Sample list is empty: {path}")

    duplicated = sorted({n for n in names if names.count(n) > 1})
    if duplicated:
        raise ValueError(f"Duplicate sample names in {path.name}: {duplicated}")

    logger.info(f"Read {len(names)} sample names from {path.name}")
    return names


def read_count_matrix(
    path: Path,
    sep: str = "\t",
    has_header: bool = True,
    sample_names: Optional[Sequence[str]] = None
) -> pd.DataFrame:
    """Read a genes x samples count matrix.

    Args:
        path: Count matrix file, gene identifiers in the first column
        sep: Field delimiter (tab by default)
        has_header: Whether the first line holds sample names
        sample_names: Sample list. Names the columns of a headerless file;
            for a file with a header, selects and orders its columns.

    Returns:
        DataFrame indexed by gene id, one column per sample
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Count matrix not found: {path}")

    if has_header:
        counts = pd.read_csv(path, sep=sep, index_col=0, converters={0: str})
        counts.columns = [str(c).strip() for c in counts.columns]

        if sample_names is not None:
            missing = [s for s in sample_names if s not in counts.columns]
            if missing:
                raise ValueError(
                    f"Samples missing from count matrix header: {missing}"
                )
            dropped = [c for c in counts.columns if c not in set(sample_names)]
            if dropped:
                logger.warning(f"Ignoring count columns not in sample list: {dropped}")
            counts = counts[list(sample_names)]
    else:
        if sample_names is None:
            raise ValueError(
                "A sample list is required to name the columns of a count "
                "matrix without a header"
            )
        counts = pd.read_csv(path, sep=sep, header=None, index_col=0, converters={0: str})
        if counts.shape[1] != len(sample_names):
            raise ValueError(
                f"Count matrix has {counts.shape[1]} sample columns but the "
                f"sample list has {len(sample_names)} names"
            )
        counts.columns = list(sample_names)

    counts.index = counts.index.astype(str)
    counts.index.name = GENE_ID_COLUMN

    if counts.index.duplicated().any():
        dup = counts.index[counts.index.duplicated()].unique().tolist()
        raise ValueError(f"Duplicate gene identifiers in count matrix: {dup[:10]}")

    logger.info(f"Read count matrix: {counts.shape[0]} genes x {counts.shape[1]} samples")
    return counts


def validate_counts(counts: pd.DataFrame) -> pd.DataFrame:
    """Check that counts are non-negative integers and return them as int64."""
    numeric = counts.apply(pd.to_numeric, errors="coerce")

    if numeric.isna().any().any():
        bad_cols = numeric.columns[numeric.isna().any()].tolist()
        raise ValueError(f"Non-numeric or missing counts in samples: {bad_cols}")

    values = numeric.to_numpy(dtype=float)
    if (values < 0).any():
        raise ValueError("Count matrix contains negative values")
    if not np.array_equal(values, np.round(values)):
        raise ValueError("Count matrix contains non-integer values")

    return numeric.round().astype(np.int64)


def build_metadata(
    sample_names: Sequence[str],
    conditions: Optional[Sequence[str]] = None,
    condition_labels: Optional[Sequence[str]] = None,
    group_size: Optional[int] = None,
    metadata: Optional[pd.DataFrame] = None,
    condition_column: str = "condition"
) -> pd.DataFrame:
    """Build the sample metadata table.

    Exactly one source must be given:
    - conditions: one label per sample, in sample order
    - condition_labels + group_size: each label repeated group_size times
    - metadata: a table with a sample_id column (or sample ids in its first
      column) and the condition column

    Returns:
        DataFrame indexed by sample id with the condition column
    """
    sources = [
        conditions is not None,
        condition_labels is not None or group_size is not None,
        metadata is not None,
    ]
    if sum(sources) != 1:
        raise ValueError(
            "Provide exactly one metadata source: 'conditions', "
            "'condition_labels' with 'group_size', or a metadata file"
        )

    sample_names = list(sample_names)

    if metadata is not None:
        meta_df = metadata.copy()
        id_col = SAMPLE_ID_COLUMN if SAMPLE_ID_COLUMN in meta_df.columns else meta_df.columns[0]
        if condition_column not in meta_df.columns:
            raise ValueError(f"Condition column '{condition_column}' not in metadata")
        meta_df[id_col] = meta_df[id_col].astype(str).str.strip()
        meta_df = meta_df.set_index(id_col)
        meta_df.index.name = SAMPLE_ID_COLUMN
        if meta_df.index.duplicated().any():
            dup = meta_df.index[meta_df.index.duplicated()].unique().tolist()
            raise ValueError(f"Duplicate sample ids in metadata: {dup}")
        meta_df[condition_column] = meta_df[condition_column].astype(str)
        return meta_df

    if conditions is None:
        if not condition_labels or not group_size:
            raise ValueError("'condition_labels' and 'group_size' must be given together")
        conditions = [label for label in condition_labels for _ in range(int(group_size))]

    conditions = [str(c) for c in conditions]
    if len(conditions) != len(sample_names):
        raise ValueError(
            f"{len(conditions)} condition labels for {len(sample_names)} samples"
        )

    meta_df = pd.DataFrame(
        {condition_column: conditions},
        index=pd.Index(sample_names, name=SAMPLE_ID_COLUMN)
    )
    return meta_df


def align_samples(
    counts: pd.DataFrame,
    metadata: pd.DataFrame
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Align metadata rows to count-matrix columns.

    The two must describe the same set of samples; metadata is re-ordered to
    match the count matrix.
    """
    count_samples = list(counts.columns)
    meta_samples = list(metadata.index)

    missing_meta = [s for s in count_samples if s not in set(meta_samples)]
    missing_counts = [s for s in meta_samples if s not in set(count_samples)]
    if missing_meta or missing_counts:
        raise ValueError(
            "Sample names do not align between count matrix and metadata: "
            f"missing from metadata={missing_meta}, "
            f"missing from count matrix={missing_counts}"
        )

    return counts, metadata.loc[count_samples]


def resolve_contrast(
    metadata: pd.DataFrame,
    condition_column: str = "condition",
    contrast: Optional[Sequence[str]] = None
) -> List[str]:
    """Return the [treatment, reference] pair of condition levels.

    A configured contrast must name two levels present in the metadata.
    Without one, the metadata must have exactly two levels; the first level
    seen is taken as the reference.
    """
    levels = list(pd.unique(metadata[condition_column].astype(str)))

    if contrast is not None:
        contrast = [str(c) for c in contrast]
        if len(contrast) != 2:
            raise ValueError(f"Contrast must name two levels, got {contrast}")
        if contrast[0] == contrast[1]:
            raise ValueError(f"Contrast levels must differ, got {contrast}")
        missing = [c for c in contrast if c not in levels]
        if missing:
            raise ValueError(f"Contrast levels {missing} not in conditions {levels}")
        return contrast

    if len(levels) != 2:
        raise ValueError(
            f"Cannot infer a contrast from {len(levels)} condition levels "
            f"{levels}; set 'contrast' to [treatment, reference]"
        )
    return [levels[1], levels[0]]


def group_sizes(metadata: pd.DataFrame, condition_column: str = "condition") -> Dict[str, int]:
    """Number of samples per condition level."""
    counts = metadata[condition_column].value_counts(sort=False)
    return {str(k): int(v) for k, v in counts.items()}


def counts_to_frame(counts: pd.DataFrame) -> pd.DataFrame:
    """Gene-indexed matrix to a table with a leading gene_id column."""
    out = counts.copy()
    out.index.name = GENE_ID_COLUMN
    return out.reset_index()


def frame_to_counts(df: pd.DataFrame) -> pd.DataFrame:
    """Inverse of counts_to_frame: index by the first (gene id) column."""
    out = df.set_index(df.columns[0])
    out.index = out.index.astype(str)
    out.index.name = GENE_ID_COLUMN
    return out
