"""Configuration handling for the gene set analysis engine."""

import math
from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import tomli
import tomli_w

from .exceptions import ConfigError, UnsupportedCombinationError


class GeneSetStatistic(str, Enum):
    """Gene set statistics that can be computed."""

    FISHER = "fisher"
    STOUFFER = "stouffer"
    REPORTER = "reporter"
    TAIL_STRENGTH = "tailStrength"
    WILCOXON = "wilcoxon"
    MEAN = "mean"
    MEDIAN = "median"
    SUM = "sum"
    MAXMEAN = "maxmean"
    GSEA = "gsea"
    FGSEA = "fgsea"
    PAGE = "page"


class SignificanceMethod(str, Enum):
    """Strategies used to turn gene set statistics into p-values."""

    GENE_SAMPLING = "geneSampling"
    SAMPLE_PERMUTATION = "samplePermutation"
    NULL_DIST = "nullDist"


class DirectionalityClass(str, Enum):
    """Ways of aggregating signed gene-level effects within a gene set."""

    DISTINCT_DIR_UP = "distinct_dir_up"
    DISTINCT_DIR_DN = "distinct_dir_dn"
    NON_DIR = "non_dir"
    MIXED_DIR_UP = "mixed_dir_up"
    MIXED_DIR_DN = "mixed_dir_dn"

    @property
    def is_mixed(self) -> bool:
        return self in (DirectionalityClass.MIXED_DIR_UP, DirectionalityClass.MIXED_DIR_DN)

    @property
    def is_distinct(self) -> bool:
        return self in (DirectionalityClass.DISTINCT_DIR_UP, DirectionalityClass.DISTINCT_DIR_DN)


# Statistics that only accept p-values, and those that only accept signed scores
P_VALUE_STATISTICS = frozenset({
    GeneSetStatistic.FISHER,
    GeneSetStatistic.STOUFFER,
    GeneSetStatistic.REPORTER,
    GeneSetStatistic.TAIL_STRENGTH,
})
SCORE_STATISTICS = frozenset({
    GeneSetStatistic.MAXMEAN,
    GeneSetStatistic.GSEA,
    GeneSetStatistic.FGSEA,
    GeneSetStatistic.PAGE,
})

# Statistics with a closed-form null distribution
NULL_DIST_STATISTICS = frozenset({
    GeneSetStatistic.FISHER,
    GeneSetStatistic.STOUFFER,
    GeneSetStatistic.REPORTER,
    GeneSetStatistic.WILCOXON,
    GeneSetStatistic.PAGE,
})

ADJUSTMENT_METHODS = ("holm", "hochberg", "hommel", "bonferroni", "BH", "BY", "fdr", "none")


def _coerce_enum(enum_cls, value, option: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigError(f"Invalid value for {option}: {value!r} (allowed: {allowed})")


@dataclass(frozen=True)
class GSAConfig:
    """Immutable set of options for one gene set analysis run.

    All values are validated when the object is created, so an analysis never
    starts with an invalid combination of options.

    Args:
        gene_set_stat: Gene set statistic to compute
        signif_method: Significance estimation strategy
        adj_method: Multiple testing correction applied per directionality class
        gs_size_lim: Closed (min, max) interval of allowed gene set sizes
        n_perm: Number of permutations for the resampling strategies
        gsea_param: Exponent weighting gene scores in the enrichment score
        parallelism: Number of worker processes for the permutation loop
        verbose: Show progress bars
        seed: Seed for the random draws, None for fresh entropy
        classes: Directionality classes to compute, None for all computable
    """

    gene_set_stat: GeneSetStatistic = GeneSetStatistic.MEAN
    signif_method: SignificanceMethod = SignificanceMethod.GENE_SAMPLING
    adj_method: str = "fdr"
    gs_size_lim: Tuple[float, float] = (1, math.inf)
    n_perm: int = 10000
    gsea_param: float = 1.0
    parallelism: int = 1
    verbose: bool = False
    seed: Optional[int] = None
    classes: Optional[Tuple[DirectionalityClass, ...]] = field(default=None)

    def __post_init__(self):
        # Frozen dataclass: normalised values are written with object.__setattr__
        stat = _coerce_enum(GeneSetStatistic, self.gene_set_stat, "gene_set_stat")
        signif = _coerce_enum(SignificanceMethod, self.signif_method, "signif_method")
        object.__setattr__(self, "gene_set_stat", stat)
        object.__setattr__(self, "signif_method", signif)

        if self.adj_method not in ADJUSTMENT_METHODS:
            raise ConfigError(
                f"Invalid value for adj_method: {self.adj_method!r} "
                f"(allowed: {', '.join(ADJUSTMENT_METHODS)})"
            )

        try:
            min_size, max_size = self.gs_size_lim
        except (TypeError, ValueError):
            raise ConfigError(f"gs_size_lim must be a (min, max) pair, got {self.gs_size_lim!r}")
        max_size = math.inf if max_size is None else float(max_size)
        min_size = float(min_size)
        if min_size < 1 or max_size < min_size:
            raise ConfigError(f"Invalid gene set size limits: ({min_size}, {max_size})")
        object.__setattr__(self, "gs_size_lim", (min_size, max_size))

        if isinstance(self.n_perm, bool) or not isinstance(self.n_perm, int) or self.n_perm < 1:
            raise ConfigError(f"n_perm must be a positive integer, got {self.n_perm!r}")
        if isinstance(self.parallelism, bool) or not isinstance(self.parallelism, int) or self.parallelism < 1:
            raise ConfigError(f"parallelism must be a positive integer, got {self.parallelism!r}")
        try:
            gsea_param = float(self.gsea_param)
        except (TypeError, ValueError):
            raise ConfigError(f"gsea_param must be a real number, got {self.gsea_param!r}")
        if not math.isfinite(gsea_param) or gsea_param < 0:
            raise ConfigError(f"gsea_param must be a finite non-negative number, got {gsea_param}")
        object.__setattr__(self, "gsea_param", gsea_param)

        if self.classes is not None:
            classes = tuple(
                _coerce_enum(DirectionalityClass, cls, "classes") for cls in self.classes
            )
            if not classes:
                raise ConfigError("classes must name at least one directionality class")
            object.__setattr__(self, "classes", classes)

        self._check_combination()

    def _check_combination(self):
        stat = self.gene_set_stat
        signif = self.signif_method

        if stat is GeneSetStatistic.FGSEA and signif is not SignificanceMethod.GENE_SAMPLING:
            raise UnsupportedCombinationError(
                "gene_set_stat='fgsea' can only be used with signif_method='geneSampling'"
            )
        if signif is SignificanceMethod.NULL_DIST and stat not in NULL_DIST_STATISTICS:
            raise UnsupportedCombinationError(
                f"signif_method='nullDist' is not available for gene_set_stat='{stat.value}'"
            )
        if stat is GeneSetStatistic.GSEA and self.adj_method not in ("fdr", "none"):
            raise UnsupportedCombinationError(
                "Only adj_method='fdr' or 'none' can be used with gene_set_stat='gsea'"
            )
        if signif is SignificanceMethod.SAMPLE_PERMUTATION and self.classes is not None:
            mixed = [cls.value for cls in self.classes if cls.is_mixed]
            if mixed:
                raise UnsupportedCombinationError(
                    f"Mixed-directional classes ({', '.join(mixed)}) are not available "
                    "with signif_method='samplePermutation'"
                )

    @classmethod
    def from_dict(cls, options: Dict[str, Any]) -> "GSAConfig":
        """Build a configuration from a dictionary of options.

        Args:
            options: Mapping of option names to values

        Returns:
            Validated configuration
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration options: {', '.join(unknown)}")
        options = dict(options)
        if "gs_size_lim" in options:
            options["gs_size_lim"] = tuple(options["gs_size_lim"])
        if options.get("classes") is not None:
            options["classes"] = tuple(options["classes"])
        return cls(**options)

    @classmethod
    def from_toml(cls, config_path: Union[str, Path]) -> "GSAConfig":
        """Load the configuration from the [analysis] table of a TOML file.

        Args:
            config_path: Path to the TOML configuration file

        Returns:
            Validated configuration
        """
        try:
            with open(config_path, "rb") as f:
                config = tomli.load(f)
        except FileNotFoundError:
            raise ConfigError(f"Error loading configuration file: {config_path} does not exist")
        except tomli.TOMLDecodeError as e:
            raise ConfigError(f"Error loading configuration file: {str(e)}")

        if "analysis" not in config:
            raise ConfigError("Missing required sections in configuration: analysis")
        return cls.from_dict(config["analysis"])

    def replace(self, **overrides) -> "GSAConfig":
        """Return a copy with some options changed (validated again)."""
        options = self.to_dict()
        options.update(overrides)
        return GSAConfig.from_dict(options)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-typed dictionary of the options."""
        options = asdict(self)
        options["gene_set_stat"] = self.gene_set_stat.value
        options["signif_method"] = self.signif_method.value
        options["gs_size_lim"] = list(self.gs_size_lim)
        if self.classes is not None:
            options["classes"] = [cls.value for cls in self.classes]
        return options

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file.

        Args:
            output_path: Path to save the configuration file
        """
        # TOML has no null, unset options are left out
        options = {k: v for k, v in self.to_dict().items() if v is not None}
        with open(output_path, "wb") as f:
            tomli_w.dump({"analysis": options}, f)
