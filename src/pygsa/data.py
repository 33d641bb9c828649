"""
Input normalisation and gene set filtering for the gene set analysis engine.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import polars as pl

from .config import (
    GeneSetStatistic,
    P_VALUE_STATISTICS,
    SCORE_STATISTICS,
)
from .exceptions import (
    DegenerateInputError,
    EmptyCollectionError,
    IncompatibleStatTypeError,
    InputMismatchError,
)

logger = logging.getLogger(__name__)

GeneValues = Union[Mapping[str, float], pl.DataFrame]

# Statistics taking log or inverse-normal transforms of p-values
_LOG_BASED_STATISTICS = frozenset({
    GeneSetStatistic.FISHER,
    GeneSetStatistic.STOUFFER,
    GeneSetStatistic.REPORTER,
})


@dataclass(frozen=True)
class GeneLevelData:
    """Gene-level statistics aligned to one gene order.

    Attributes:
        gene_ids: Gene identifiers, in statistic order
        stats: Gene-level statistics
        stat_type: 'p' for p-value-like statistics, 't' for signed scores
        directions: Gene directions aligned to gene_ids, or None
        signs: +1 / -1 per gene (zero counts as +1), or None when unknown
    """

    gene_ids: Tuple[str, ...]
    stats: np.ndarray
    stat_type: str
    directions: Optional[np.ndarray]
    signs: Optional[np.ndarray]

    @property
    def n_genes(self) -> int:
        return len(self.gene_ids)

    @property
    def has_directions(self) -> bool:
        return self.directions is not None


@dataclass(frozen=True)
class FilteredCollection:
    """Gene sets retained after intersecting with measured genes and size filtering."""

    names: Tuple[str, ...]
    members: Tuple[np.ndarray, ...]
    n_genes_tot: np.ndarray
    n_genes_up: Optional[np.ndarray]
    n_genes_dn: Optional[np.ndarray]

    def __len__(self):
        return len(self.names)

    def member_matrix(self) -> np.ndarray:
        """Member indices as a (n_sets, max_size) matrix padded with -1."""
        return member_matrix(self.members)


def member_matrix(members: Iterable[np.ndarray]) -> np.ndarray:
    """Stack index arrays of different length into a -1 padded matrix.

    Args:
        members: Gene index arrays, one per gene set

    Returns:
        2D int64 array with one row per gene set
    """
    members = list(members)
    width = max((len(m) for m in members), default=0)
    matrix = np.full((len(members), width), -1, dtype=np.int64)
    for i, m in enumerate(members):
        matrix[i, :len(m)] = m
    return matrix


def _as_gene_values(values: GeneValues, name: str) -> Tuple[List[str], np.ndarray]:
    """Split a gene -> value input into identifiers and a float array."""
    if isinstance(values, pl.DataFrame):
        if values.width != 2:
            raise InputMismatchError(
                f"{name} must have exactly two columns (gene id, value), got {values.width}"
            )
        id_col = "gene_id" if "gene_id" in values.columns else values.columns[0]
        value_col = [c for c in values.columns if c != id_col][0]
        ids = [str(g) for g in values[id_col].to_list()]
        arr = values[value_col].cast(pl.Float64).to_numpy()
    elif isinstance(values, Mapping):
        ids = [str(g) for g in values.keys()]
        arr = np.asarray(list(values.values()), dtype=np.float64)
    else:
        raise InputMismatchError(
            f"{name} must be a mapping of gene id to value or a polars DataFrame, "
            f"got {type(values).__name__}"
        )

    if len(set(ids)) != len(ids):
        raise InputMismatchError(f"{name} contains duplicated gene identifiers")
    return ids, np.array(arr, dtype=np.float64)


def detect_stat_type(stats: np.ndarray) -> str:
    """Classify gene-level statistics as p-value-like ('p') or scores ('t').

    Args:
        stats: Gene-level statistics without missing values

    Returns:
        'p' if every value lies in [0, 1], else 't'
    """
    if stats.size > 0 and np.all((stats >= 0) & (stats <= 1)):
        return "p"
    return "t"


def check_stat_compatibility(gene_set_stat: GeneSetStatistic, stat_type: str, stats: np.ndarray):
    """Check that a gene set statistic accepts the given gene-level statistics.

    Raises:
        IncompatibleStatTypeError: If the statistic needs the other statistic type
        DegenerateInputError: If a log-based statistic meets a p-value of 0
    """
    if gene_set_stat in P_VALUE_STATISTICS and stat_type != "p":
        raise IncompatibleStatTypeError(
            f"gene_set_stat='{gene_set_stat.value}' requires p-values, "
            "but the gene-level statistics are not all within [0, 1]"
        )
    if gene_set_stat in SCORE_STATISTICS and stat_type != "t":
        raise IncompatibleStatTypeError(
            f"gene_set_stat='{gene_set_stat.value}' requires signed scores (e.g. t-values), "
            "but the gene-level statistics look like p-values"
        )
    if gene_set_stat in _LOG_BASED_STATISTICS and np.any(stats == 0):
        raise DegenerateInputError(
            f"gene_set_stat='{gene_set_stat.value}' cannot use p-values equal to 0"
        )


def sign_of(directions: np.ndarray) -> np.ndarray:
    """Direction signs with ties (zero) assigned to up-regulation."""
    return np.where(directions >= 0, 1, -1).astype(np.int8)


def normalize_inputs(
    gene_level_stats: GeneValues,
    gene_set_stat: GeneSetStatistic,
    directions: Optional[GeneValues] = None,
) -> GeneLevelData:
    """
    Validate gene-level inputs and build the internal representation.

    Genes with a missing (NaN) statistic are dropped. Directions, when given,
    must cover exactly the same genes as the statistics.

    Args:
        gene_level_stats: Gene id -> statistic
        gene_set_stat: Gene set statistic that will be computed
        directions: Optional gene id -> direction (only the sign is used)

    Returns:
        GeneLevelData aligned to the statistics' gene order
    """
    gene_ids, stats = _as_gene_values(gene_level_stats, "gene_level_stats")
    if not gene_ids:
        raise InputMismatchError("gene_level_stats is empty")

    dirs = None
    if directions is not None:
        dir_ids, dir_values = _as_gene_values(directions, "directions")
        if set(dir_ids) != set(gene_ids):
            missing = len(set(gene_ids) - set(dir_ids))
            extra = len(set(dir_ids) - set(gene_ids))
            raise InputMismatchError(
                "directions and gene_level_stats cover different genes "
                f"({missing} missing from directions, {extra} not in gene_level_stats)"
            )
        position = {g: i for i, g in enumerate(dir_ids)}
        dirs = dir_values[[position[g] for g in gene_ids]]
        if np.any(np.isnan(dirs)):
            raise DegenerateInputError("directions contain missing values")

    keep = ~np.isnan(stats)
    if not np.all(keep):
        logger.warning(f"Dropping {int((~keep).sum())} genes with missing statistics")
        gene_ids = [g for g, k in zip(gene_ids, keep) if k]
        stats = stats[keep]
        if dirs is not None:
            dirs = dirs[keep]
        if not gene_ids:
            raise InputMismatchError("gene_level_stats contains only missing values")

    stat_type = detect_stat_type(stats)
    check_stat_compatibility(gene_set_stat, stat_type, stats)

    if dirs is not None:
        signs = sign_of(dirs)
    elif stat_type == "t":
        signs = sign_of(stats)
    else:
        signs = None

    logger.debug(f"Gene-level statistics classified as '{stat_type}' for {len(gene_ids)} genes")
    return GeneLevelData(
        gene_ids=tuple(gene_ids),
        stats=stats,
        stat_type=stat_type,
        directions=dirs,
        signs=signs,
    )


def align_permutation_matrix(
    perm: Union[np.ndarray, pl.DataFrame],
    gene_ids: Tuple[str, ...],
    row_ids: Optional[Iterable[str]] = None,
    name: str = "perm_stats",
) -> np.ndarray:
    """
    Reorder a genes x permutations matrix to the statistics' gene order.

    Args:
        perm: 2D array, or a polars DataFrame whose first column holds gene ids
        gene_ids: Gene order of the analysis
        row_ids: Row labels when perm is a plain array
        name: Input name used in error messages

    Returns:
        Float array of shape (len(gene_ids), n_permutations)
    """
    if isinstance(perm, pl.DataFrame):
        if perm.width < 2:
            raise InputMismatchError(f"{name} needs a gene id column and at least one permutation")
        id_col = "gene_id" if "gene_id" in perm.columns else perm.columns[0]
        labels = [str(g) for g in perm[id_col].to_list()]
        matrix = perm.drop(id_col).cast(pl.Float64).to_numpy()
    else:
        matrix = np.asarray(perm, dtype=np.float64)
        if matrix.ndim != 2:
            raise InputMismatchError(f"{name} must be two-dimensional")
        if row_ids is None:
            raise InputMismatchError(f"{name} given as an array needs row labels")
        labels = [str(g) for g in row_ids]
        if len(labels) != matrix.shape[0]:
            raise InputMismatchError(f"{name} has {matrix.shape[0]} rows but {len(labels)} labels")

    if len(set(labels)) != len(labels):
        raise InputMismatchError(f"{name} contains duplicated gene identifiers")
    position = {g: i for i, g in enumerate(labels)}
    if not set(gene_ids) <= set(position):
        raise InputMismatchError(f"Row labels of {name} do not match the gene-level statistics")
    if len(position) != len(gene_ids):
        extra = len(position) - len(gene_ids)
        logger.debug(f"Ignoring {extra} rows of {name} for genes without a statistic")
    aligned = matrix[[position[g] for g in gene_ids], :]
    if np.any(np.isnan(aligned)):
        raise DegenerateInputError(f"{name} contains missing values")
    return aligned


def filter_gene_sets(
    gsc: Mapping[str, Iterable[str]],
    data: GeneLevelData,
    gs_size_lim: Tuple[float, float] = (1, np.inf),
) -> FilteredCollection:
    """
    Restrict a gene set collection to measured genes and allowed sizes.

    Args:
        gsc: Gene set name -> member gene identifiers
        data: Normalised gene-level data
        gs_size_lim: Closed (min, max) interval of gene set sizes

    Returns:
        FilteredCollection with member indices into data.gene_ids
    """
    min_size, max_size = gs_size_lim
    # Empty sets are always dropped
    min_size = max(min_size, 1)
    position = {g: i for i, g in enumerate(data.gene_ids)}

    names, members = [], []
    n_dropped = 0
    for name, genes in gsc.items():
        idx = sorted({position[str(g)] for g in genes if str(g) in position})
        if min_size <= len(idx) <= max_size:
            names.append(name)
            members.append(np.asarray(idx, dtype=np.int64))
        else:
            n_dropped += 1

    if not names:
        raise EmptyCollectionError(
            f"No gene sets with between {min_size:g} and {max_size:g} measured genes"
        )

    n_tot = np.array([len(m) for m in members], dtype=np.int64)
    if data.signs is not None:
        n_up = np.array([int(np.sum(data.signs[m] > 0)) for m in members], dtype=np.int64)
        n_dn = n_tot - n_up
    else:
        n_up = n_dn = None

    logger.info(f"Retained {len(names)} gene sets, dropped {n_dropped} outside size limits")
    return FilteredCollection(
        names=tuple(names),
        members=tuple(members),
        n_genes_tot=n_tot,
        n_genes_up=n_up,
        n_genes_dn=n_dn,
    )
