"""
Pipeline step base class.

Each step of the differential expression pipeline (preprocessing, edgeR,
DESeq2, method comparison, plots) is an agent that reads the tables left by
earlier steps from its input directory and writes its own tables, a
log_<agent>.txt and a meta_<agent>.json into its output directory.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
import pandas as pd

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class BaseAgent(ABC):
    """One pipeline step: validate_inputs -> run -> validate_outputs."""

    def __init__(
        self,
        agent_name: str,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        self.agent_name = agent_name
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)
        self.config = config or {}

        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.logger = self._setup_logging()

        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.success: bool = False
        self.errors: list = []

    def _setup_logging(self) -> logging.Logger:
        """Log DEBUG to log_<agent>.txt and INFO to the console.

        Loggers live under "dge_pipeline.<agent>"; handlers from an earlier
        instance of the same agent are dropped first.
        """
        logger = logging.getLogger(f"dge_pipeline.{self.agent_name}")
        logger.setLevel(logging.DEBUG)

        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

        formatter = logging.Formatter(LOG_FORMAT)

        fh = logging.FileHandler(
            self.output_dir / f"log_{self.agent_name}.txt", mode='w', encoding='utf-8'
        )
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(formatter)

        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)
        return logger

    def close_logging(self) -> None:
        for handler in list(self.logger.handlers):
            handler.close()
            self.logger.removeHandler(handler)

    def input_path(self, filename: str) -> Path:
        return self.input_dir / filename

    def load_csv(
        self,
        filename: str,
        required: bool = True,
        **read_kwargs
    ) -> Optional[pd.DataFrame]:
        """Read a table from the input directory.

        A missing optional table gives None; a missing required one raises
        FileNotFoundError. Extra keyword arguments go to pandas.read_csv.
        """
        filepath = self.input_path(filename)

        if not filepath.exists():
            if required:
                raise FileNotFoundError(f"Required input file not found: {filepath}")
            self.logger.warning(f"Optional file not found: {filepath}")
            return None

        self.logger.info(f"Loading {filename}...")
        df = pd.read_csv(filepath, **read_kwargs)
        self.logger.info(f"  -> {len(df)} rows, {len(df.columns)} columns")
        return df

    def save_csv(self, df: pd.DataFrame, filename: str, index: bool = False) -> Path:
        filepath = self.output_dir / filename
        df.to_csv(filepath, index=index)
        self.logger.info(f"Saved {filename}: {len(df)} rows")
        return filepath

    def save_json(self, data: Dict, filename: str) -> Path:
        filepath = self.output_dir / filename
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        self.logger.info(f"Saved {filename}")
        return filepath

    def generate_metadata(self, **kwargs) -> Dict[str, Any]:
        """Contents of meta_<agent>.json: timing, status, config and results."""
        elapsed = None
        if self.end_time and self.start_time:
            elapsed = (self.end_time - self.start_time).total_seconds()

        return {
            "agent_name": self.agent_name,
            "timestamp": datetime.now().isoformat(),
            "execution_time_seconds": elapsed,
            "success": self.success,
            "errors": self.errors,
            "config_used": self.config,
            **kwargs
        }

    @abstractmethod
    def validate_inputs(self) -> bool:
        """Load the step's inputs; False (or an exception) stops the step."""

    @abstractmethod
    def run(self) -> Dict[str, Any]:
        """Write the step's tables and return its summary fields."""

    @abstractmethod
    def validate_outputs(self) -> bool:
        """Check the written tables."""

    def execute(self) -> Dict[str, Any]:
        """Run the step and always write meta_<agent>.json.

        Failures are logged, recorded in the metadata and re-raised.
        """
        self.start_time = datetime.now()
        results: Dict[str, Any] = {}
        self.logger.info(f"{'='*60}")
        self.logger.info(f"Starting {self.agent_name}")
        self.logger.info(f"{'='*60}")

        try:
            self.logger.info("Validating inputs...")
            if not self.validate_inputs():
                raise ValueError("Input validation failed")

            self.logger.info("Running analysis...")
            results = self.run()

            self.logger.info("Validating outputs...")
            if not self.validate_outputs():
                raise ValueError("Output validation failed")

            self.success = True
            self.logger.info(f"{self.agent_name} completed successfully")

        except Exception as e:
            self.success = False
            self.errors.append(str(e))
            self.logger.error(f"Error in {self.agent_name}: {e}")
            raise

        finally:
            self.end_time = datetime.now()
            metadata = self.generate_metadata(**results if self.success else {})
            self.save_json(metadata, f"meta_{self.agent_name}.json")
            self.close_logging()

        return results


class AgentResult:
    """Outcome of one step as recorded by the pipeline."""

    def __init__(
        self,
        agent_name: str,
        success: bool,
        output_dir: Path,
        metadata: Dict[str, Any],
        errors: Optional[list] = None
    ):
        self.agent_name = agent_name
        self.success = success
        self.output_dir = output_dir
        self.metadata = metadata
        self.errors = errors or []

    def __repr__(self):
        status = "SUCCESS" if self.success else "FAILED"
        return f"AgentResult({self.agent_name}: {status})"
