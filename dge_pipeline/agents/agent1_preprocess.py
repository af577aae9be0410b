"""
Agent 1: Preprocessing

Loads the raw count matrix and sample information, aligns them, drops genes
without counts and library-size normalizes the remaining genes.

Input:
- counts.tsv: Gene count matrix (genes x samples), tab-delimited
- samples.txt: Newline-delimited sample names (optional with a header row)
- metadata.csv: Sample metadata (optional when conditions come from config)

Output:
- filtered_counts.csv: Raw counts of genes with a non-zero total
- normalized_counts.csv: Counts per million (CPM)
- sample_metadata.csv: Sample metadata aligned to the count matrix columns
- meta_agent1_preprocess.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional

from ..utils.base_agent import BaseAgent
from ..utils.io import (
    align_samples,
    build_metadata,
    counts_to_frame,
    group_sizes,
    read_count_matrix,
    read_sample_names,
    resolve_contrast,
    validate_counts,
)

COUNT_FILE_ALTERNATIVES = [
    "count_matrix.tsv", "counts.txt", "count_matrix.txt",
    "count_matrix.csv", "counts.csv"
]


def counts_per_million(counts: pd.DataFrame) -> pd.DataFrame:
    """Scale each sample to a library size of one million reads."""
    library_sizes = counts.sum(axis=0)
    if (library_sizes == 0).any():
        empty = library_sizes[library_sizes == 0].index.tolist()
        raise ValueError(f"Samples with zero total counts: {empty}")
    return counts.div(library_sizes, axis=1) * 1e6


class PreprocessAgent(BaseAgent):
    """Agent for loading, aligning, filtering and normalizing counts."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "count_file": "counts.tsv",
            "count_sep": "\t",
            "count_has_header": True,
            "samples_file": "samples.txt",
            "metadata_file": "metadata.csv",
            "conditions": None,        # One label per sample, in sample order
            "condition_labels": None,  # e.g. ["control", "treated"] ...
            "group_size": None,        # ... each repeated group_size times
            "condition_column": "condition",
            "contrast": None,          # [treatment, reference]
            "min_count_filter": 0,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent1_preprocess", input_dir, output_dir, merged_config)

        self.counts: Optional[pd.DataFrame] = None
        self.metadata: Optional[pd.DataFrame] = None
        self.contrast: Optional[list] = None

    def _find_count_file(self) -> Path:
        count_path = self.input_path(self.config["count_file"])
        if count_path.exists():
            return count_path

        for alt in COUNT_FILE_ALTERNATIVES:
            alt_path = self.input_path(alt)
            if alt_path.exists():
                self.logger.warning(
                    f"{self.config['count_file']} not found, using {alt}"
                )
                if alt_path.suffix == ".csv":
                    self.config["count_sep"] = ","
                return alt_path

        raise FileNotFoundError(f"Required input file not found: {count_path}")

    def _load_metadata(self, sample_names: list) -> pd.DataFrame:
        """Build sample metadata from the one configured condition source.

        Sources are per-sample 'conditions', 'condition_labels' with
        'group_size', or a metadata file in the input directory. Configuring
        more than one is an error.
        """
        conditions = self.config["conditions"]
        labels = self.config["condition_labels"]
        group_size = self.config["group_size"]

        meta_df = None
        if self.input_path(self.config["metadata_file"]).exists():
            meta_df = self.load_csv(self.config["metadata_file"])

        sources = []
        if conditions is not None:
            sources.append("conditions")
        if labels is not None or group_size is not None:
            sources.append("condition_labels/group_size")
        if meta_df is not None:
            sources.append(self.config["metadata_file"])

        if not sources:
            raise FileNotFoundError(
                "No sample conditions: provide a metadata file or set "
                "'conditions' / 'condition_labels' + 'group_size'"
            )
        if len(sources) > 1:
            raise ValueError(f"Ambiguous metadata source, found {sources}; configure exactly one")

        self.logger.info(f"Sample conditions from: {sources[0]}")
        return build_metadata(
            sample_names,
            conditions=conditions,
            condition_labels=labels,
            group_size=group_size,
            metadata=meta_df,
            condition_column=self.config["condition_column"]
        )

    def validate_inputs(self) -> bool:
        """Load and align the count matrix and sample metadata."""
        samples_path = self.input_path(self.config["samples_file"])
        sample_names = read_sample_names(samples_path) if samples_path.exists() else None
        if sample_names is None:
            self.logger.info("No sample list found, using count matrix header")

        count_path = self._find_count_file()
        self.logger.info(f"Loading {count_path.name}...")
        counts = read_count_matrix(
            count_path,
            sep=self.config["count_sep"],
            has_header=self.config["count_has_header"],
            sample_names=sample_names
        )
        counts = validate_counts(counts)

        metadata = self._load_metadata(list(counts.columns))
        self.counts, self.metadata = align_samples(counts, metadata)

        condition_col = self.config["condition_column"]
        self.contrast = resolve_contrast(
            self.metadata, condition_col, self.config["contrast"]
        )

        self.logger.info(f"Count matrix: {self.counts.shape[0]} genes, {self.counts.shape[1]} samples")
        self.logger.info(f"Conditions: {group_sizes(self.metadata, condition_col)}")
        self.logger.info(f"Contrast: {self.contrast[0]} vs {self.contrast[1]}")

        return True

    def run(self) -> Dict[str, Any]:
        """Filter and normalize counts."""
        counts = self.counts
        n_input = len(counts)

        totals = counts.sum(axis=1)
        keep = totals > 0
        n_zero = int((~keep).sum())
        self.logger.info(f"Dropping {n_zero} genes with zero counts in all samples")

        min_count = self.config["min_count_filter"]
        if min_count and min_count > 0:
            keep &= totals >= min_count
            self.logger.info(f"After filtering (min_count={min_count}): {int(keep.sum())} genes")

        filtered = counts.loc[keep]
        if filtered.empty:
            raise ValueError("No genes left after filtering")

        cpm = counts_per_million(filtered)

        meta_out = self.metadata.reset_index()

        self.save_csv(counts_to_frame(filtered), "filtered_counts.csv")
        self.save_csv(counts_to_frame(cpm), "normalized_counts.csv")
        self.save_csv(meta_out, "sample_metadata.csv")

        library_sizes = filtered.sum(axis=0)
        self.logger.info(
            f"Library sizes: min={int(library_sizes.min())}, "
            f"median={int(np.median(library_sizes))}, max={int(library_sizes.max())}"
        )

        return {
            "input_genes": n_input,
            "zero_count_genes": n_zero,
            "filtered_genes": int(len(filtered)),
            "n_samples": int(filtered.shape[1]),
            "group_sizes": group_sizes(self.metadata, self.config["condition_column"]),
            "contrast": self.contrast,
            "library_sizes": {k: int(v) for k, v in library_sizes.items()},
        }

    def validate_outputs(self) -> bool:
        """Validate preprocessing outputs."""
        required_files = [
            "filtered_counts.csv",
            "normalized_counts.csv",
            "sample_metadata.csv"
        ]

        for filename in required_files:
            if not (self.output_dir / filename).exists():
                self.logger.error(f"Missing output file: {filename}")
                return False

        filtered = pd.read_csv(self.output_dir / "filtered_counts.csv", index_col=0)
        if (filtered.sum(axis=1) == 0).any():
            self.logger.error("Zero-count genes remain after filtering")
            return False

        return True
