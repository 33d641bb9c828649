"""
Directionality classes: transformed gene-level vectors and class layout.

For p-value input with directions, one-sided p-values are derived per gene:

    p_up = p / 2      if sign >= 0 else 1 - p / 2
    p_dn = 1 - p / 2  if sign >= 0 else p / 2

A direction of exactly zero counts as up-regulated.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import (
    DirectionalityClass,
    GeneSetStatistic,
    SignificanceMethod,
)
from .exceptions import MissingDirectionsError, UnsupportedCombinationError
from . import stats as gss
from .stats import LOWER, UPPER

# Vector keys
RAW = "raw"
ABS = "abs"
P_UP = "p_up"
P_DN = "p_dn"

# Large statistic = significant for these, when applied to p-values
_P_UPPER_TAIL = frozenset({
    GeneSetStatistic.FISHER,
    GeneSetStatistic.STOUFFER,
    GeneSetStatistic.REPORTER,
    GeneSetStatistic.TAIL_STRENGTH,
})


@dataclass(frozen=True)
class ClassSpec:
    """How one directionality class is computed.

    Attributes:
        cls: Directionality class
        vector: Key of the gene-level vector the statistic is computed on
        subset: +1 / -1 to keep only members with that sign, None for all members
        tail: 'upper' or 'lower', the direction in which the statistic is significant
        calculator: Statistic for observed gene sets
        background_calculator: Statistic for gene-sampling backgrounds
    """

    cls: DirectionalityClass
    vector: str
    subset: Optional[int]
    tail: str
    calculator: Callable
    background_calculator: Callable



def directional_pvalues(pvalues: np.ndarray, signs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    One-sided p-values for up- and down-regulation.

    Args:
        pvalues: Two-sided gene-level p-values
        signs: Direction per gene; values >= 0 count as up

    Returns:
        Tuple of (p_up, p_dn)
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    half = pvalues / 2
    up = np.asarray(signs) >= 0
    p_up = np.where(up, half, 1 - half)
    p_dn = np.where(up, 1 - half, half)
    return p_up, p_dn


def class_vectors(
    stats: np.ndarray,
    stat_type: str,
    signs: Optional[np.ndarray],
    needed: Sequence[str],
) -> Dict[str, np.ndarray]:
    """
    Build the gene-level vectors used by the requested classes.

    Args:
        stats: Gene-level statistics
        stat_type: 'p' or 't'
        signs: Direction signs, required for the p_up / p_dn vectors
        needed: Vector keys to compute

    Returns:
        Dictionary of vector key -> gene-level vector
    """
    vectors = {}
    if RAW in needed:
        vectors[RAW] = stats
    if ABS in needed:
        vectors[ABS] = np.abs(stats)
    if P_UP in needed or P_DN in needed:
        if stat_type != "p" or signs is None:
            raise MissingDirectionsError("Directional p-values need p-values and directions")
        vectors[P_UP], vectors[P_DN] = directional_pvalues(stats, signs)
    return vectors


def subset_members(members: np.ndarray, signs: Optional[np.ndarray], subset: Optional[int]) -> np.ndarray:
    """Blank out (-1) the members whose sign differs from subset."""
    if subset is None:
        return members
    valid = members >= 0
    member_signs = signs[np.where(valid, members, 0)]
    return np.where(valid & (member_signs == subset), members, -1)


def _available_classes(
    stat: GeneSetStatistic,
    stat_type: str,
    has_signs: bool,
    signif_method: SignificanceMethod,
) -> Dict[DirectionalityClass, str]:
    """Classes that cannot be computed, mapped to the reason."""
    unavailable = {}
    if stat_type == "p" and not has_signs:
        for cls in DirectionalityClass:
            if cls is not DirectionalityClass.NON_DIR:
                unavailable[cls] = "directions"
    if stat is GeneSetStatistic.MAXMEAN:
        unavailable[DirectionalityClass.NON_DIR] = "statistic"
    if stat in (GeneSetStatistic.GSEA, GeneSetStatistic.FGSEA):
        unavailable[DirectionalityClass.MIXED_DIR_UP] = "statistic"
        unavailable[DirectionalityClass.MIXED_DIR_DN] = "statistic"
    if signif_method is SignificanceMethod.SAMPLE_PERMUTATION:
        for cls in (DirectionalityClass.MIXED_DIR_UP, DirectionalityClass.MIXED_DIR_DN):
            unavailable.setdefault(cls, "permutation")
    return unavailable


def _spec_for(stat: GeneSetStatistic, stat_type: str, cls: DirectionalityClass) -> ClassSpec:
    calculator = gss.CALCULATORS[stat]
    background = gss.BACKGROUND_CALCULATORS.get(stat, calculator)

    if stat_type == "p":
        tail = UPPER if stat in _P_UPPER_TAIL else LOWER
        vector, subset = {
            DirectionalityClass.DISTINCT_DIR_UP: (P_UP, None),
            DirectionalityClass.DISTINCT_DIR_DN: (P_DN, None),
            DirectionalityClass.NON_DIR: (RAW, None),
            DirectionalityClass.MIXED_DIR_UP: (RAW, 1),
            DirectionalityClass.MIXED_DIR_DN: (RAW, -1),
        }[cls]
        return ClassSpec(cls, vector, subset, tail, calculator, background)

    if stat is GeneSetStatistic.MAXMEAN and cls.is_mixed:
        part = gss.maxmean_positive if cls is DirectionalityClass.MIXED_DIR_UP else gss.maxmean_negative
        return ClassSpec(cls, RAW, None, UPPER, part, part)

    vector, subset, tail = {
        DirectionalityClass.DISTINCT_DIR_UP: (RAW, None, UPPER),
        DirectionalityClass.DISTINCT_DIR_DN: (RAW, None, LOWER),
        DirectionalityClass.NON_DIR: (ABS, None, UPPER),
        DirectionalityClass.MIXED_DIR_UP: (RAW, 1, UPPER),
        DirectionalityClass.MIXED_DIR_DN: (ABS, -1, UPPER),
    }[cls]
    return ClassSpec(cls, vector, subset, tail, calculator, background)


def class_layout(
    stat: GeneSetStatistic,
    stat_type: str,
    has_signs: bool,
    signif_method: SignificanceMethod,
    requested: Optional[Sequence[DirectionalityClass]] = None,
) -> List[ClassSpec]:
    """
    Decide which directionality classes are computed and how.

    Without an explicit request every computable class is returned. An
    explicitly requested class that cannot be computed is an error.

    Args:
        stat: Gene set statistic
        stat_type: 'p' or 't'
        has_signs: Whether gene directions are known
        signif_method: Significance estimation strategy
        requested: Classes asked for by the caller, or None

    Returns:
        List of ClassSpec in DirectionalityClass order
    """
    unavailable = _available_classes(stat, stat_type, has_signs, signif_method)

    if requested is None:
        chosen = [cls for cls in DirectionalityClass if cls not in unavailable]
    else:
        for cls in requested:
            reason = unavailable.get(cls)
            if reason == "directions":
                raise MissingDirectionsError(
                    f"Class '{cls.value}' needs gene directions when the statistics are p-values"
                )
            if reason == "statistic":
                raise UnsupportedCombinationError(
                    f"Class '{cls.value}' is not defined for gene_set_stat='{stat.value}'"
                )
            if reason == "permutation":
                raise UnsupportedCombinationError(
                    f"Class '{cls.value}' is not available with signif_method='samplePermutation'"
                )
        chosen = [cls for cls in DirectionalityClass if cls in set(requested)]

    return [_spec_for(stat, stat_type, cls) for cls in chosen]


def needed_vectors(specs: Sequence[ClassSpec]) -> List[str]:
    return sorted({spec.vector for spec in specs})
