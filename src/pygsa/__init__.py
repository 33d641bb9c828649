"""
Gene Set Analysis
=================

A Python package for gene set analysis of gene-level p-values or scores
with directionality classes.
"""

from .pipeline import GeneSetAnalysis, run_gsa
from .config import (
    DirectionalityClass as DirectionalityClass,
    GeneSetStatistic as GeneSetStatistic,
    GSAConfig as GSAConfig,
    SignificanceMethod as SignificanceMethod,
)
from .exceptions import (
    ConfigError as ConfigError,
    DegenerateInputError as DegenerateInputError,
    EmptyCollectionError as EmptyCollectionError,
    GSAError as GSAError,
    IncompatibleStatTypeError as IncompatibleStatTypeError,
    InputMismatchError as InputMismatchError,
    MissingDirectionsError as MissingDirectionsError,
    UnsupportedCombinationError as UnsupportedCombinationError,
)
from .results import GSAResult as GSAResult
from .stats import adjust_pvalues as adjust_pvalues
from .utils import setup_logging as setup_logging, ensure_dir as ensure_dir

__version__ = "0.1.0"

__all__ = [
    "GeneSetAnalysis",
    "run_gsa",
    "GSAConfig",
    "GSAResult",
    "GeneSetStatistic",
    "SignificanceMethod",
    "DirectionalityClass",
    "GSAError",
    "ConfigError",
    "InputMismatchError",
    "MissingDirectionsError",
    "IncompatibleStatTypeError",
    "EmptyCollectionError",
    "DegenerateInputError",
    "UnsupportedCombinationError",
    "adjust_pvalues",
    "setup_logging",
    "ensure_dir",
]
