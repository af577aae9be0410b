"""
Differential Expression Pipeline - Agent Unit Tests
"""
import json

import pytest
import pandas as pd
import numpy as np

from conftest import N_DE, requires_r, requires_r_deseq2

from dge_pipeline.agents import (
    ComparisonAgent,
    DESeq2Agent,
    EdgeRAgent,
    PreprocessAgent,
    VisualizationAgent,
)
from dge_pipeline.utils.results import direction_counts, select_significant


def _copy_preprocessed(src, dest):
    dest.mkdir(parents=True, exist_ok=True)
    for name in ["filtered_counts.csv", "normalized_counts.csv", "sample_metadata.csv"]:
        (dest / name).write_bytes((src / name).read_bytes())
    return dest


class TestAgent1Preprocess:
    """Test cases for Agent 1 - Preprocessing."""

    def test_zero_count_genes_dropped(self, preprocessed_dir, sample_count_matrix):
        filtered = pd.read_csv(preprocessed_dir / "filtered_counts.csv", index_col=0)

        assert len(filtered) == len(sample_count_matrix) - 2
        assert "GENE148" not in filtered.index
        assert "GENE149" not in filtered.index
        assert (filtered.sum(axis=1) > 0).all()

    def test_cpm_normalization(self, preprocessed_dir):
        cpm = pd.read_csv(preprocessed_dir / "normalized_counts.csv", index_col=0)

        np.testing.assert_allclose(cpm.sum(axis=0).values, 1e6, rtol=1e-9)

    def test_metadata_aligned(self, preprocessed_dir, sample_names):
        meta = pd.read_csv(preprocessed_dir / "sample_metadata.csv")

        assert meta["sample_id"].tolist() == sample_names
        assert meta["condition"].tolist() == ["control"] * 3 + ["treated"] * 3

    def test_execution_metadata(self, preprocessed_dir):
        with open(preprocessed_dir / "meta_agent1_preprocess.json") as f:
            meta = json.load(f)

        assert meta["success"] is True
        assert meta["zero_count_genes"] == 2
        assert meta["contrast"] == ["treated", "control"]
        assert meta["group_sizes"] == {"control": 3, "treated": 3}

    def test_min_count_filter(self, tmp_path, input_dir, sample_config):
        config = {**sample_config, "min_count_filter": 10 ** 9}
        agent = PreprocessAgent(input_dir, tmp_path / "out", config)

        with pytest.raises(ValueError, match="No genes left"):
            agent.execute()

    def test_metadata_file_source(self, tmp_path, sample_count_matrix, sample_metadata):
        in_dir = tmp_path / "in"
        in_dir.mkdir()
        sample_count_matrix.to_csv(in_dir / "counts.tsv", sep="\t")
        sample_metadata.to_csv(in_dir / "metadata.csv", index=False)

        results = PreprocessAgent(in_dir, tmp_path / "out").execute()

        assert results["n_samples"] == 6
        # Contrast inferred: first level seen is the reference
        assert results["contrast"] == ["treated", "control"]

    def test_misaligned_metadata_fails(self, tmp_path, sample_count_matrix, sample_metadata):
        in_dir = tmp_path / "in"
        in_dir.mkdir()
        sample_count_matrix.to_csv(in_dir / "counts.tsv", sep="\t")
        bad = sample_metadata.copy()
        bad.loc[0, "sample_id"] = "unknown_sample"
        bad.to_csv(in_dir / "metadata.csv", index=False)

        out_dir = tmp_path / "out"
        with pytest.raises(ValueError, match="do not align"):
            PreprocessAgent(in_dir, out_dir).execute()

        with open(out_dir / "meta_agent1_preprocess.json") as f:
            meta = json.load(f)
        assert meta["success"] is False
        assert meta["errors"]

    def test_missing_conditions_fails(self, tmp_path, sample_count_matrix):
        in_dir = tmp_path / "in"
        in_dir.mkdir()
        sample_count_matrix.to_csv(in_dir / "counts.tsv", sep="\t")

        with pytest.raises(FileNotFoundError, match="No sample conditions"):
            PreprocessAgent(in_dir, tmp_path / "out").execute()

    def test_conditions_and_labels_are_ambiguous(self, tmp_path, input_dir, sample_config):
        config = {**sample_config, "conditions": ["control"] * 3 + ["treated"] * 3}

        with pytest.raises(ValueError, match="Ambiguous metadata source"):
            PreprocessAgent(input_dir, tmp_path / "out", config).execute()

    def test_metadata_file_and_labels_are_ambiguous(
        self, tmp_path, input_dir, sample_config, sample_metadata
    ):
        sample_metadata.to_csv(input_dir / "metadata.csv", index=False)

        with pytest.raises(ValueError, match="Ambiguous metadata source"):
            PreprocessAgent(input_dir, tmp_path / "out", sample_config).execute()

    def test_csv_count_file_fallback(self, tmp_path, sample_count_matrix, sample_config):
        in_dir = tmp_path / "in"
        in_dir.mkdir()
        sample_count_matrix.to_csv(in_dir / "count_matrix.csv")

        results = PreprocessAgent(in_dir, tmp_path / "out", sample_config).execute()

        assert results["filtered_genes"] == len(sample_count_matrix) - 2


class TestSignificance:
    """Test cases for shared result-table helpers."""

    def test_select_significant(self, sample_deg_results):
        sig = select_significant(sample_deg_results, 0.05, 1.0)

        assert len(sig) == N_DE
        assert list(sig.columns) == ["gene_id", "log2FC", "padj", "direction"]
        assert direction_counts(sig) == {"up": N_DE // 2, "down": N_DE // 2}
        assert sig["padj"].is_monotonic_increasing

    def test_cutoffs_are_strict(self):
        df = pd.DataFrame({
            "gene_id": ["A", "B", "C"],
            "log2FC": [1.0, 2.0, -2.0],
            "padj": [0.01, 0.05, 0.01],
        })

        sig = select_significant(df, 0.05, 1.0)

        assert sig["gene_id"].tolist() == ["C"]
        assert sig["direction"].tolist() == ["down"]


class TestAgent2EdgeR:
    """Test cases for Agent 2 - edgeR."""

    def test_tidy_results(self, tmp_path, preprocessed_dir):
        agent = EdgeRAgent(preprocessed_dir, tmp_path / "edger")
        table = pd.DataFrame(
            {
                "logFC": [2.0, -1.5],
                "logCPM": [5.1, 3.2],
                "F": [40.0, 12.0],
                "PValue": [1e-5, 1e-3],
                "FDR": [2e-5, 1e-3],
                "tagwise_dispersion": [0.05, 0.2],
                "trended_dispersion": [0.06, 0.1],
            },
            index=["GENE0", "GENE15"],
        )

        tidy = agent._tidy_results(table)

        assert list(tidy.columns) == [
            "gene_id", "log2FC", "logCPM", "F", "pvalue", "padj",
            "tagwise_dispersion", "trended_dispersion"
        ]
        assert tidy["gene_id"].tolist() == ["GENE0", "GENE15"]
        assert tidy.loc[1, "padj"] == pytest.approx(1e-3)

    def test_tidy_exact_test_results(self, tmp_path, preprocessed_dir):
        agent = EdgeRAgent(preprocessed_dir, tmp_path / "edger", {"edger_test": "exact"})
        table = pd.DataFrame(
            {"logFC": [1.0], "logCPM": [4.0], "PValue": [0.01], "FDR": [0.02]},
            index=["GENE3"],
        )

        tidy = agent._tidy_results(table)

        assert list(tidy.columns) == ["gene_id", "log2FC", "logCPM", "pvalue", "padj"]

    def test_unknown_test_rejected(self, tmp_path, preprocessed_dir):
        agent = EdgeRAgent(preprocessed_dir, tmp_path / "edger", {"edger_test": "wilcoxon"})

        with pytest.raises(ValueError, match="Input validation failed"):
            agent.execute()

    @requires_r
    def test_edger_run(self, tmp_path, preprocessed_dir, sample_config):
        agent = EdgeRAgent(preprocessed_dir, tmp_path / "edger", sample_config)

        results = agent.execute()

        assert results["method_used"] == "edger"
        assert results["common_dispersion"] > 0
        assert results["deg_count"] > 0

        all_df = pd.read_csv(tmp_path / "edger" / "edger_all_results.csv")
        assert {"gene_id", "log2FC", "logCPM", "F", "pvalue", "padj"} <= set(all_df.columns)
        assert all_df["padj"].between(0, 1).all()

        # Genes 0-9 are up in the treated group
        up = all_df.set_index("gene_id").loc[[f"GENE{i}" for i in range(5)], "log2FC"]
        assert (up > 0).all()


class TestAgent3DESeq2:
    """Test cases for Agent 3 - DESeq2."""

    def test_pydeseq2_run(self, tmp_path, preprocessed_dir, sample_config):
        out_dir = tmp_path / "deseq2"
        agent = DESeq2Agent(preprocessed_dir, out_dir, sample_config)

        results = agent.execute()

        assert results["method_used"] == "deseq2"
        assert results["backend"] == "pydeseq2"
        assert results["deg_count"] > 0
        assert set(results["size_factors"]) == {f"control_{i}" for i in range(1, 4)} | {
            f"treated_{i}" for i in range(1, 4)
        }

        all_df = pd.read_csv(out_dir / "deseq2_all_results.csv")
        assert list(all_df.columns) == [
            "gene_id", "baseMean", "log2FC", "lfcSE", "stat", "pvalue", "padj"
        ]
        assert not all_df["padj"].isna().any()
        assert all_df["padj"].between(0, 1).all()

        sig = pd.read_csv(out_dir / "deseq2_significant.csv")
        true_de = {f"GENE{i}" for i in range(N_DE)}
        assert len(set(sig["gene_id"]) & true_de) > 0

        indexed = all_df.set_index("gene_id")
        assert indexed.loc["GENE0", "log2FC"] > 0
        assert indexed.loc[f"GENE{N_DE - 1}", "log2FC"] < 0

        norm = pd.read_csv(out_dir / "deseq2_normalized_counts.csv")
        assert norm.columns[0] == "gene_id"
        assert len(norm) == 148

    def test_unknown_backend_rejected(self, tmp_path, preprocessed_dir):
        agent = DESeq2Agent(preprocessed_dir, tmp_path / "deseq2", {"deseq2_backend": "limma"})

        with pytest.raises(ValueError, match="Input validation failed"):
            agent.execute()

    def test_bad_contrast_rejected(self, tmp_path, preprocessed_dir):
        agent = DESeq2Agent(preprocessed_dir, tmp_path / "deseq2", {"contrast": ["tumor", "normal"]})

        with pytest.raises(ValueError, match="Input validation failed"):
            agent.execute()

    def test_lfc_coefficient_lookup(self, tmp_path, preprocessed_dir, sample_config):
        agent = DESeq2Agent(preprocessed_dir, tmp_path / "deseq2", sample_config)
        agent.contrast = ["treated", "control"]

        assert agent._find_lfc_coefficient(
            ["Intercept", "condition[T.treated]"]
        ) == "condition[T.treated]"
        assert agent._find_lfc_coefficient(
            ["Intercept", "condition_treated_vs_control"]
        ) == "condition_treated_vs_control"
        assert agent._find_lfc_coefficient(["Intercept"]) is None

    def test_lfc_coefficient_must_match_direction(self, tmp_path, preprocessed_dir):
        agent = DESeq2Agent(preprocessed_dir, tmp_path / "deseq2")

        # "untreated" contains "treated" but is the opposite coefficient
        agent.contrast = ["treated", "untreated"]
        assert agent._find_lfc_coefficient(["Intercept", "condition[T.untreated]"]) is None
        assert agent._find_lfc_coefficient(
            ["Intercept", "condition[T.untreated]", "condition[T.treated]"]
        ) == "condition[T.treated]"

        agent.contrast = ["KO", "WT"]
        assert agent._find_lfc_coefficient(["Intercept", "condition_WT_vs_KO"]) is None
        assert agent._find_lfc_coefficient(
            ["Intercept", "condition_KO_vs_WT"]
        ) == "condition_KO_vs_WT"

    @pytest.fixture
    def untreated_dir(self, tmp_path, sample_count_matrix):
        """Preprocessed data whose reference level sorts after the treatment."""
        in_dir = tmp_path / "untreated_input"
        in_dir.mkdir()
        sample_count_matrix.to_csv(in_dir / "counts.tsv", sep="\t")

        config = {
            "condition_labels": ["untreated", "treated"],
            "group_size": 3,
            "contrast": ["treated", "untreated"],
        }
        out_dir = tmp_path / "untreated_preprocess"
        PreprocessAgent(in_dir, out_dir, config).execute()
        return out_dir

    def test_shrunk_lfc_keeps_treatment_over_reference(self, tmp_path, untreated_dir):
        config = {"contrast": ["treated", "untreated"], "shrink_lfc": True}
        out_dir = tmp_path / "deseq2_shrunk"

        DESeq2Agent(untreated_dir, out_dir, config).execute()

        all_df = pd.read_csv(out_dir / "deseq2_all_results.csv").set_index("gene_id")
        assert all_df.loc["GENE0", "log2FC"] > 0
        assert all_df.loc[f"GENE{N_DE - 1}", "log2FC"] < 0

        sig = pd.read_csv(out_dir / "deseq2_significant.csv").set_index("gene_id")
        if "GENE0" in sig.index:
            assert sig.loc["GENE0", "direction"] == "up"

    def test_shrinkage_keeps_wald_statistic(self, tmp_path, preprocessed_dir, sample_config):
        plain_dir = tmp_path / "deseq2_plain"
        shrunk_dir = tmp_path / "deseq2_shrunk"

        DESeq2Agent(preprocessed_dir, plain_dir, sample_config).execute()
        results = DESeq2Agent(
            preprocessed_dir, shrunk_dir, {**sample_config, "shrink_lfc": True}
        ).execute()

        assert results["lfc_shrunk"] is True

        plain = pd.read_csv(plain_dir / "deseq2_all_results.csv").set_index("gene_id")
        shrunk = pd.read_csv(shrunk_dir / "deseq2_all_results.csv").set_index("gene_id")
        shrunk = shrunk.loc[plain.index]
        np.testing.assert_allclose(shrunk["stat"], plain["stat"], rtol=1e-6)
        np.testing.assert_allclose(shrunk["pvalue"], plain["pvalue"], rtol=1e-6)
        assert shrunk.loc["GENE0", "log2FC"] > 0

    def test_paired_design(self, tmp_path, sample_count_matrix, sample_metadata):
        in_dir = tmp_path / "paired_input"
        in_dir.mkdir()
        sample_count_matrix.to_csv(in_dir / "counts.tsv", sep="\t")
        meta = sample_metadata.copy()
        meta["donor"] = ["d1", "d2", "d3"] * 2
        meta.to_csv(in_dir / "metadata.csv", index=False)

        pre_dir = tmp_path / "paired_preprocess"
        PreprocessAgent(in_dir, pre_dir, {"contrast": ["treated", "control"]}).execute()

        out_dir = tmp_path / "deseq2_paired"
        results = DESeq2Agent(
            pre_dir, out_dir, {"contrast": ["treated", "control"], "paired_column": "donor"}
        ).execute()

        assert results["design"] == "~ donor + condition"
        assert results["deg_count"] > 0
        all_df = pd.read_csv(out_dir / "deseq2_all_results.csv").set_index("gene_id")
        assert all_df.loc["GENE0", "log2FC"] > 0

    def test_missing_paired_column_rejected(self, tmp_path, preprocessed_dir, sample_config):
        config = {**sample_config, "paired_column": "donor"}

        with pytest.raises(ValueError, match="Input validation failed"):
            DESeq2Agent(preprocessed_dir, tmp_path / "deseq2", config).execute()

    @requires_r_deseq2
    def test_r_backend_run(self, tmp_path, preprocessed_dir, sample_config):
        out_dir = tmp_path / "deseq2_r"
        config = {**sample_config, "deseq2_backend": "r"}

        results = DESeq2Agent(preprocessed_dir, out_dir, config).execute()

        assert results["backend"] == "r"
        assert results["design"] == "~ condition"
        assert results["deg_count"] > 0

        all_df = pd.read_csv(out_dir / "deseq2_all_results.csv")
        assert list(all_df.columns) == [
            "gene_id", "baseMean", "log2FC", "lfcSE", "stat", "pvalue", "padj"
        ]
        indexed = all_df.set_index("gene_id")
        assert indexed.loc["GENE0", "log2FC"] > 0
        assert indexed.loc[f"GENE{N_DE - 1}", "log2FC"] < 0


class TestAgent4Comparison:
    """Test cases for Agent 4 - Method comparison."""

    @pytest.fixture
    def results_dir(self, tmp_path):
        res_dir = tmp_path / "results"
        res_dir.mkdir()

        pd.DataFrame({
            "gene_id": ["A", "B", "C", "D", "E"],
            "log2FC": [2.0, -2.0, 0.1, 3.0, -0.5],
            "padj": [0.001, 0.01, 0.9, 0.001, 0.5],
        }).to_csv(res_dir / "edger_all_results.csv", index=False)
        pd.DataFrame({
            "gene_id": ["A", "B", "D"],
            "log2FC": [2.0, -2.0, 3.0],
            "padj": [0.001, 0.01, 0.001],
            "direction": ["up", "down", "up"],
        }).to_csv(res_dir / "edger_significant.csv", index=False)

        pd.DataFrame({
            "gene_id": ["A", "B", "C", "D", "F"],
            "log2FC": [2.5, 1.5, 0.2, 0.5, 4.0],
            "padj": [0.001, 0.2, 0.8, 0.3, 0.001],
        }).to_csv(res_dir / "deseq2_all_results.csv", index=False)
        pd.DataFrame({
            "gene_id": ["A", "F"],
            "log2FC": [2.5, 4.0],
            "padj": [0.001, 0.001],
            "direction": ["up", "up"],
        }).to_csv(res_dir / "deseq2_significant.csv", index=False)

        return res_dir

    def test_comparison_summary(self, tmp_path, results_dir):
        out_dir = tmp_path / "comparison"

        summary = ComparisonAgent(results_dir, out_dir).execute()

        assert summary["genes_compared"] == 6
        assert summary["genes_tested_by_both"] == 4
        assert summary["significant_both"] == 1
        assert summary["edger_only"] == 2
        assert summary["deseq2_only"] == 1
        assert summary["jaccard_index"] == pytest.approx(0.25)
        assert summary["discordant_direction"] == 1
        assert summary["log2fc_spearman_rho"] is not None

        merged = pd.read_csv(out_dir / "method_comparison.csv").set_index("gene_id")
        assert merged.loc["A", "agreement"] == "both"
        assert merged.loc["F", "agreement"] == "deseq2_only"
        assert merged.loc["C", "agreement"] == "neither"
        assert np.isnan(merged.loc["F", "log2FC_edger"])

    def test_missing_method_fails(self, tmp_path, results_dir):
        (results_dir / "edger_all_results.csv").unlink()

        with pytest.raises(ValueError, match="Input validation failed"):
            ComparisonAgent(results_dir, tmp_path / "comparison").execute()


class TestAgent5Visualization:
    """Test cases for Agent 5 - Visualization."""

    def test_figures_generated(self, tmp_path, preprocessed_dir, sample_deg_results):
        in_dir = _copy_preprocessed(preprocessed_dir, tmp_path / "viz_input")
        sample_deg_results.to_csv(in_dir / "deseq2_all_results.csv", index=False)
        select_significant(sample_deg_results).to_csv(in_dir / "deseq2_significant.csv", index=False)

        out_dir = tmp_path / "viz"
        results = VisualizationAgent(in_dir, out_dir, {"dpi": 50}).execute()

        figures = out_dir / "figures"
        for name in ["pca_plot", "volcano_deseq2", "ma_deseq2", "heatmap_top_genes"]:
            assert (figures / f"{name}.png").exists(), name
        assert results["failed_figures"] == []

    def test_pca_only_without_results(self, tmp_path, preprocessed_dir):
        in_dir = _copy_preprocessed(preprocessed_dir, tmp_path / "viz_input")

        out_dir = tmp_path / "viz"
        results = VisualizationAgent(in_dir, out_dir, {"dpi": 50}).execute()

        assert (out_dir / "figures" / "pca_plot.png").exists()
        assert "heatmap_top_genes" in results["failed_figures"]

    def test_single_figure_format_string(self, tmp_path, preprocessed_dir):
        in_dir = _copy_preprocessed(preprocessed_dir, tmp_path / "viz_input")

        out_dir = tmp_path / "viz"
        results = VisualizationAgent(in_dir, out_dir, {"dpi": 50, "figure_format": "png"}).execute()

        assert (out_dir / "figures" / "pca_plot.png").exists()
        assert "pca_plot" not in results["failed_figures"]

    def test_no_inputs_fails(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()

        with pytest.raises(ValueError, match="Input validation failed"):
            VisualizationAgent(empty, tmp_path / "viz").execute()
