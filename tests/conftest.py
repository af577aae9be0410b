"""
Differential Expression Pipeline - Test Configuration and Fixtures
"""
import json
import sys
import pytest
import pandas as pd
import numpy as np
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

N_GENES = 150
N_DE = 20
GROUP_SIZE = 3


def _r_package_available(name: str) -> bool:
    try:
        from rpy2.robjects.packages import isinstalled
        return bool(isinstalled(name))
    except Exception:
        return False


# Skip markers for tests requiring R packages
requires_r = pytest.mark.skipif(
    not _r_package_available("edgeR"),
    reason="rpy2 with R package edgeR not available"
)

requires_r_deseq2 = pytest.mark.skipif(
    not _r_package_available("DESeq2"),
    reason="rpy2 with R package DESeq2 not available"
)


@pytest.fixture
def sample_names():
    return (
        [f"control_{i+1}" for i in range(GROUP_SIZE)] +
        [f"treated_{i+1}" for i in range(GROUP_SIZE)]
    )


@pytest.fixture
def sample_count_matrix(sample_names):
    """Small synthetic count matrix (genes x samples).

    The first N_DE genes change strongly in the treated group and the last two
    genes have no reads at all.
    """
    rng = np.random.default_rng(42)

    genes = [f"GENE{i}" for i in range(N_GENES)]
    base_mean = rng.uniform(100, 1000, size=N_GENES)
    means = np.repeat(base_mean[:, None], len(sample_names), axis=1)

    # First half of the DE genes up 8x, second half down 8x
    means[:N_DE // 2, GROUP_SIZE:] *= 8
    means[N_DE // 2:N_DE, GROUP_SIZE:] /= 8

    n_param = 10.0  # dispersion 0.1
    counts = rng.negative_binomial(n_param, n_param / (n_param + means))
    counts[-2:, :] = 0

    df = pd.DataFrame(counts, index=genes, columns=sample_names)
    df.index.name = "gene_id"
    return df


@pytest.fixture
def sample_metadata(sample_names):
    """Matching metadata for sample_count_matrix."""
    return pd.DataFrame({
        "sample_id": sample_names,
        "condition": ["control"] * GROUP_SIZE + ["treated"] * GROUP_SIZE,
    })


@pytest.fixture
def sample_config():
    return {
        "condition_labels": ["control", "treated"],
        "group_size": GROUP_SIZE,
        "contrast": ["treated", "control"],
        "padj_cutoff": 0.05,
        "log2fc_cutoff": 1.0,
        "dpi": 50,
    }


@pytest.fixture
def input_dir(tmp_path, sample_count_matrix, sample_names, sample_config):
    """Input directory with counts.tsv, samples.txt and config.json."""
    in_dir = tmp_path / "input"
    in_dir.mkdir()

    sample_count_matrix.to_csv(in_dir / "counts.tsv", sep="\t")
    (in_dir / "samples.txt").write_text("\n".join(sample_names) + "\n", encoding="utf-8")
    with open(in_dir / "config.json", "w") as f:
        json.dump(sample_config, f)

    return in_dir


@pytest.fixture
def preprocessed_dir(tmp_path, input_dir, sample_config):
    """Output directory of a finished preprocessing run."""
    from dge_pipeline.agents import PreprocessAgent

    out_dir = tmp_path / "agent1_preprocess"
    PreprocessAgent(input_dir, out_dir, sample_config).execute()
    return out_dir


@pytest.fixture
def sample_deg_results(sample_count_matrix):
    """DESeq2-style results for the genes of sample_count_matrix."""
    rng = np.random.default_rng(7)
    genes = sample_count_matrix.index[:-2].tolist()
    n = len(genes)

    log2fc = rng.normal(0, 0.3, n)
    log2fc[:N_DE // 2] = 3.0
    log2fc[N_DE // 2:N_DE] = -3.0
    padj = rng.uniform(0.2, 1.0, n)
    padj[:N_DE] = 1e-6

    return pd.DataFrame({
        "gene_id": genes,
        "baseMean": rng.uniform(100, 1000, n),
        "log2FC": log2fc,
        "lfcSE": np.full(n, 0.3),
        "stat": log2fc / 0.3,
        "pvalue": padj / 10,
        "padj": padj,
    })
