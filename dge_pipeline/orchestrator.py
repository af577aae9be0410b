"""
Differential Expression Pipeline Orchestrator

Coordinates the execution of the pipeline agents.

Usage:
    from dge_pipeline import DGEPipeline

    pipeline = DGEPipeline(
        input_dir="./data",
        output_dir="./results",
        config={"condition_labels": ["control", "treated"], "group_size": 3}
    )

    # Run full pipeline
    results = pipeline.run()

    # Only one method
    pipeline = DGEPipeline(..., config={"methods": ["deseq2"]})

    # Or run specific agents
    pipeline.run_agent("agent1_preprocess")
    pipeline.run_from("agent5_visualization")  # Resume from agent 5

Pipeline:
    Preprocess -> edgeR -> DESeq2 -> Comparison -> Visualization

The comparison agent only runs when both methods are selected.
"""

import argparse
import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .agents import (
    ComparisonAgent,
    DESeq2Agent,
    EdgeRAgent,
    PreprocessAgent,
    VisualizationAgent,
)
from .utils.base_agent import AgentResult

METHOD_AGENTS = {
    "edger": "agent2_edger",
    "deseq2": "agent3_deseq2",
}


class DGEPipeline:
    """Orchestrator for the differential expression pipeline."""

    AGENT_ORDER = [
        "agent1_preprocess",
        "agent2_edger",
        "agent3_deseq2",
        "agent4_comparison",
        "agent5_visualization",
    ]

    AGENT_CLASSES = {
        "agent1_preprocess": PreprocessAgent,
        "agent2_edger": EdgeRAgent,
        "agent3_deseq2": DESeq2Agent,
        "agent4_comparison": ComparisonAgent,
        "agent5_visualization": VisualizationAgent,
    }

    # Define which outputs each agent needs from previous agents
    AGENT_DEPENDENCIES = {
        "agent1_preprocess": [],
        "agent2_edger": ["filtered_counts.csv", "sample_metadata.csv"],
        "agent3_deseq2": ["filtered_counts.csv", "sample_metadata.csv"],
        "agent4_comparison": [
            "edger_all_results.csv", "edger_significant.csv",
            "deseq2_all_results.csv", "deseq2_significant.csv"
        ],
        "agent5_visualization": ["normalized_counts.csv", "sample_metadata.csv"],
    }

    DEFAULT_METHODS = ["edger", "deseq2"]

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None,
        run_id: Optional[str] = None
    ):
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)

        # Create output directory with timestamp, or reuse an earlier run
        timestamp = run_id or datetime.now().strftime("%Y%m%d_%H%M%S")
        self.run_dir = self.output_dir / f"run_{timestamp}"
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.logger = self._setup_logging()

        self.config = self._load_config(config)
        self.methods = self._resolve_methods()

        # Track execution state
        self.execution_state = {
            "run_id": timestamp,
            "start_time": None,
            "end_time": None,
            "status": "pending",
            "methods": self.methods,
            "completed_agents": [],
            "failed_agents": [],
            "agent_results": {}
        }
        self.agent_records: Dict[str, AgentResult] = {}

    def _setup_logging(self) -> logging.Logger:
        """Setup pipeline-level logging."""
        logger = logging.getLogger("dge_pipeline.orchestrator")
        logger.setLevel(logging.DEBUG)

        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

        # File handler
        log_file = self.run_dir / "pipeline.log"
        fh = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        fh.setLevel(logging.DEBUG)

        # Console handler
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)

        return logger

    def _load_config(self, config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Merge input_dir/config.json beneath the explicit config."""
        file_config = {}
        config_file = self.input_dir / "config.json"
        if config_file.exists():
            with open(config_file, 'r', encoding='utf-8') as f:
                file_config = json.load(f)
            self.logger.info(f"Loaded config.json: {sorted(file_config)}")

        return {**file_config, **(config or {})}

    def _resolve_methods(self) -> List[str]:
        methods = self.config.get("methods") or self.DEFAULT_METHODS
        if isinstance(methods, str):
            methods = [methods]
        methods = [m.lower() for m in methods]

        unknown = [m for m in methods if m not in METHOD_AGENTS]
        if unknown:
            raise ValueError(
                f"Unknown methods {unknown}, expected any of {sorted(METHOD_AGENTS)}"
            )
        return [m for m in self.DEFAULT_METHODS if m in methods]

    def get_agent_order(self) -> List[str]:
        """Agent order for the selected methods."""
        selected = {METHOD_AGENTS[m] for m in self.methods}
        order = []
        for agent_name in self.AGENT_ORDER:
            if agent_name in METHOD_AGENTS.values() and agent_name not in selected:
                continue
            if agent_name == "agent4_comparison" and len(self.methods) < 2:
                continue
            order.append(agent_name)
        return order

    def _get_agent_input_dir(self, agent_name: str) -> Path:
        """Determine input directory for an agent."""
        # First agent reads the raw inputs
        if agent_name == "agent1_preprocess":
            return self.input_dir

        # For subsequent agents, use accumulated outputs
        return self.run_dir / "accumulated"

    def _accumulate_outputs(self, agent_name: str) -> None:
        """Copy agent outputs to accumulated directory for next agents."""
        accumulated_dir = self.run_dir / "accumulated"
        accumulated_dir.mkdir(exist_ok=True)

        agent_output_dir = self.run_dir / agent_name

        if not agent_output_dir.exists():
            return

        # Copy all CSV and JSON files; later runs of an agent replace its files
        for pattern in ["*.csv", "*.json"]:
            for f in agent_output_dir.glob(pattern):
                shutil.copy2(f, accumulated_dir / f.name)

        figures_dir = agent_output_dir / "figures"
        if figures_dir.exists():
            dest_figures = accumulated_dir / "figures"
            if dest_figures.exists():
                shutil.rmtree(dest_figures)
            shutil.copytree(figures_dir, dest_figures)

    def _check_dependencies(self, agent_name: str, input_dir: Path) -> None:
        missing = [
            f for f in self.AGENT_DEPENDENCIES.get(agent_name, [])
            if not (input_dir / f).exists()
        ]
        if missing:
            raise FileNotFoundError(
                f"{agent_name} needs outputs of earlier agents: {missing}"
            )

    def run_agent(self, agent_name: str, config_override: Optional[Dict] = None) -> Dict[str, Any]:
        """Run a single agent."""
        if agent_name not in self.AGENT_CLASSES:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Running {agent_name}")
        self.logger.info(f"{'='*60}")

        # Merge configs
        agent_config = {**self.config, **(config_override or {})}

        # Get directories
        input_dir = self._get_agent_input_dir(agent_name)
        output_dir = self.run_dir / agent_name

        try:
            self._check_dependencies(agent_name, input_dir)

            # Instantiate and run
            AgentClass = self.AGENT_CLASSES[agent_name]
            agent = AgentClass(
                input_dir=input_dir,
                output_dir=output_dir,
                config=agent_config
            )
            results = agent.execute()

        except Exception as e:
            self.logger.error(f"Agent {agent_name} failed: {e}")
            self.execution_state["failed_agents"].append(agent_name)
            self.agent_records[agent_name] = AgentResult(
                agent_name, False, output_dir, {}, errors=[str(e)]
            )
            raise

        self.execution_state["completed_agents"].append(agent_name)
        self.execution_state["agent_results"][agent_name] = results
        self.agent_records[agent_name] = AgentResult(
            agent_name, True, output_dir, results
        )

        # Accumulate outputs for next agents
        self._accumulate_outputs(agent_name)

        return results

    def _run_sequence(self, agents_to_run: List[str]) -> None:
        self.logger.info(f"Agents to run: {agents_to_run}")

        for agent_name in agents_to_run:
            try:
                self.run_agent(agent_name)
            except Exception as e:
                self.logger.error(f"Pipeline stopped at {agent_name}: {e}")
                break

    def _finalize(self) -> None:
        self.execution_state["end_time"] = datetime.now().isoformat()
        self.execution_state["status"] = (
            "failed" if self.execution_state["failed_agents"] else "completed"
        )
        self._save_execution_state()

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Pipeline {self.execution_state['status']}")
        self.logger.info(f"Completed: {len(self.execution_state['completed_agents'])} agents")
        self.logger.info(f"Failed: {len(self.execution_state['failed_agents'])} agents")
        self.logger.info(f"Results: {self.run_dir}")
        self.logger.info(f"{'='*60}")

    def run(self, stop_after: Optional[str] = None) -> Dict[str, Any]:
        """Run the full pipeline or until a specific agent."""
        self.execution_state["start_time"] = datetime.now().isoformat()

        self.logger.info("Starting Differential Expression Pipeline")
        self.logger.info(f"Methods: {self.methods}")
        self.logger.info(f"Run directory: {self.run_dir}")

        agent_order = self.get_agent_order()

        # Determine which agents to run
        if stop_after:
            if stop_after not in agent_order:
                raise ValueError(f"Unknown agent: {stop_after}")
            stop_idx = agent_order.index(stop_after) + 1
            agents_to_run = agent_order[:stop_idx]
        else:
            agents_to_run = agent_order

        self._run_sequence(agents_to_run)
        self._finalize()

        return self.execution_state

    def run_from(self, agent_name: str) -> Dict[str, Any]:
        """Resume pipeline from a specific agent."""
        agent_order = self.get_agent_order()

        if agent_name not in agent_order:
            raise ValueError(f"Unknown agent: {agent_name}")

        if self.execution_state["start_time"] is None:
            self.execution_state["start_time"] = datetime.now().isoformat()

        self.logger.info(f"Resuming from {agent_name}")
        self._run_sequence(agent_order[agent_order.index(agent_name):])
        self._finalize()

        return self.execution_state

    def _save_execution_state(self) -> None:
        """Save execution state to JSON."""
        state_file = self.run_dir / "pipeline_summary.json"
        with open(state_file, 'w', encoding='utf-8') as f:
            json.dump(self.execution_state, f, indent=2, default=str)


def create_sample_data(
    output_dir: Path,
    n_genes: int = 1000,
    n_samples: int = 6,
    seed: int = 42
) -> None:
    """Create sample data for trying out the pipeline.

    Writes counts.tsv (tab-delimited, with header), samples.txt and
    config.json with two conditions of n_samples // 2 samples each.
    """
    import numpy as np
    import pandas as pd

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    rng = np.random.default_rng(seed)

    group_size = n_samples // 2
    if group_size < 1:
        raise ValueError("n_samples must be at least 2")

    genes = [f"GENE{i+1:05d}" for i in range(n_genes)]
    samples = (
        [f"control_{i+1}" for i in range(group_size)] +
        [f"treated_{i+1}" for i in range(group_size)]
    )

    # Negative binomial counts around a per-gene mean
    base_mean = rng.lognormal(mean=5, sigma=1.5, size=n_genes)
    means = np.repeat(base_mean[:, None], len(samples), axis=1)

    # Differential expression in the treated group for the first 10% of genes
    n_de = max(1, n_genes // 10)
    fold_changes = rng.choice([0.2, 0.25, 4.0, 5.0], size=n_de)
    means[:n_de, group_size:] *= fold_changes[:, None]

    dispersion = 0.1
    n_param = 1.0 / dispersion
    counts = rng.negative_binomial(n_param, n_param / (n_param + means))

    # A few genes without any reads
    counts[-5:, :] = 0

    count_df = pd.DataFrame(counts, index=pd.Index(genes, name="gene_id"), columns=samples)
    count_df.to_csv(output_dir / "counts.tsv", sep="\t")

    with open(output_dir / "samples.txt", 'w', encoding='utf-8') as f:
        f.write("\n".join(samples) + "\n")

    config = {
        "condition_labels": ["control", "treated"],
        "group_size": group_size,
        "contrast": ["treated", "control"],
        "padj_cutoff": 0.05,
        "log2fc_cutoff": 1.0
    }
    with open(output_dir / "config.json", 'w', encoding='utf-8') as f:
        json.dump(config, f, indent=2)

    logging.getLogger("dge_pipeline.orchestrator").info(
        f"Sample data created in {output_dir}: {n_genes} genes x {len(samples)} samples"
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Bulk RNA-seq Differential Expression Pipeline")
    parser.add_argument("--input", "-i", required=True, help="Input directory")
    parser.add_argument("--output", "-o", help="Output directory")
    parser.add_argument("--methods", "-m", nargs="+", choices=sorted(METHOD_AGENTS),
                        help="DE methods to run (default: edger deseq2)")
    parser.add_argument("--deseq2-backend", choices=["pydeseq2", "r"],
                        help="DESeq2 implementation")
    parser.add_argument("--create-sample", action="store_true", help="Create sample data")
    parser.add_argument("--agent", choices=DGEPipeline.AGENT_ORDER, help="Run specific agent only")
    parser.add_argument("--from-agent", choices=DGEPipeline.AGENT_ORDER,
                        help="Resume from specific agent")
    parser.add_argument("--run-id", help="Reuse run_<RUN_ID> in the output directory")

    args = parser.parse_args(argv)

    if args.create_sample:
        logging.basicConfig(level=logging.INFO)
        create_sample_data(Path(args.input))
        return 0

    if not args.output:
        parser.error("--output is required unless --create-sample is given")

    config: Dict[str, Any] = {}
    if args.methods:
        config["methods"] = args.methods
    if args.deseq2_backend:
        config["deseq2_backend"] = args.deseq2_backend

    pipeline = DGEPipeline(
        input_dir=Path(args.input),
        output_dir=Path(args.output),
        config=config,
        run_id=args.run_id
    )

    if args.agent:
        pipeline.execution_state["start_time"] = datetime.now().isoformat()
        try:
            pipeline.run_agent(args.agent)
        except Exception:
            # Already logged and recorded in failed_agents by run_agent
            return 1
        finally:
            pipeline._finalize()
        return 0

    if args.from_agent:
        state = pipeline.run_from(args.from_agent)
    else:
        state = pipeline.run()

    return 0 if state["status"] == "completed" else 1


# CLI interface
if __name__ == "__main__":
    raise SystemExit(main())
