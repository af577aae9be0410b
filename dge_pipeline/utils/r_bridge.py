"""
R access through rpy2.

edgeR (and the Bioconductor flavour of DESeq2) only exist in R, so the
agents that use them go through these helpers for package checks and
pandas <-> R data.frame conversion.
"""

from typing import Any

import pandas as pd

# rpy2 imports
try:
    import rpy2.robjects as ro
    from rpy2.robjects import pandas2ri
    from rpy2.robjects.conversion import localconverter
    from rpy2.robjects.packages import importr, isinstalled
    HAS_RPY2 = True
except ImportError:
    HAS_RPY2 = False


def require_r_packages(*packages: str) -> None:
    """Raise ImportError unless rpy2 and every named R package are available."""
    if not HAS_RPY2:
        raise ImportError("rpy2 not installed. Install with: pip install rpy2")

    missing = [name for name in packages if not isinstalled(name)]
    if missing:
        pkgs = ", ".join(f'"{m}"' for m in missing)
        raise ImportError(
            f"R packages not installed: {missing}. "
            f"Install with: BiocManager::install(c({pkgs}))"
        )


def import_r_package(name: str) -> Any:
    require_r_packages(name)
    return importr(name)


def to_r_frame(df: pd.DataFrame) -> Any:
    """Convert a pandas DataFrame to an R data.frame (index becomes rownames)."""
    with localconverter(ro.default_converter + pandas2ri.converter):
        return ro.conversion.py2rpy(df)


def to_pandas_frame(robj: Any) -> pd.DataFrame:
    """Convert an R data.frame to pandas (rownames become the index)."""
    with localconverter(ro.default_converter + pandas2ri.converter):
        return ro.conversion.rpy2py(robj)


def r_function(source: str) -> Any:
    """Evaluate R source that defines an anonymous function and return it."""
    require_r_packages()
    return ro.r(source)


def r_strings(values) -> Any:
    return ro.StrVector([str(v) for v in values])
