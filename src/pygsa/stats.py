"""
Statistical functions for the gene set analysis engine.

Gene set statistics share one calling convention::

    calculator(values, members, gsea_param) -> statistics

``values`` is the gene-level vector over all N measured genes and ``members``
a (k, m) matrix of gene indices, one gene set per row, padded with -1. A row
without any member yields NaN.
"""

import warnings
from typing import Callable, Dict, List, Sequence, Tuple

import numba as nb
import numpy as np
from scipy import stats
from scipy.stats import rankdata
from statsmodels.stats.multitest import multipletests

from .config import GeneSetStatistic
from .exceptions import ConfigError

UPPER = "upper"
LOWER = "lower"

# Largest p-value passed to the inverse normal, keeps Stouffer/Reporter finite
_P_MAX = 1.0 - np.finfo(np.float64).eps


#  Core numba-optimised functions for inner loops

@nb.njit
def _sample_gene_sets(n_genes: int, set_size: int, n_draws: int, seed: int):
    """
    Draw random gene sets without replacement using a partial Fisher-Yates shuffle.

    Args:
        n_genes: Number of genes to draw from
        set_size: Number of genes per draw
        n_draws: Number of draws
        seed: Seed for Numba's random generator

    Returns:
        (n_draws, set_size) array of gene indices
    """
    np.random.seed(seed)
    pool = np.arange(n_genes)
    draws = np.empty((n_draws, set_size), dtype=np.int64)
    for i in range(n_draws):
        for j in range(set_size):
            k = np.random.randint(j, n_genes)
            tmp = pool[j]
            pool[j] = pool[k]
            pool[k] = tmp
        draws[i, :] = pool[:set_size]
    return draws


@nb.njit(parallel=True)
def _count_at_least_as_extreme(observed, background, upper: bool):
    """
    Count background values at least as extreme as each observed value.

    Args:
        observed: Observed statistics
        background: Background statistics without NaN
        upper: Count values >= observed if True, <= observed otherwise

    Returns:
        Array of counts, one per observed value
    """
    counts = np.zeros(observed.shape[0], dtype=np.int64)
    for i in nb.prange(observed.shape[0]):
        obs = observed[i]
        # Tolerance absorbs summation-order differences between identical sets
        tol = 1e-12 * max(1.0, abs(obs))
        c = 0
        for j in range(background.shape[0]):
            if upper:
                if background[j] >= obs - tol:
                    c += 1
            else:
                if background[j] <= obs + tol:
                    c += 1
        counts[i] = c
    return counts


@nb.njit
def _enrichment_walk(sorted_weights, positions, n_genes: int):
    """
    Running-sum enrichment scores walking down the whole ranked gene list.

    Args:
        sorted_weights: Hit weight of every gene, in ranking order
        positions: (k, m) sorted ranking positions of the members, padded with n_genes
        n_genes: Number of ranked genes

    Returns:
        Enrichment score per row
    """
    k, m = positions.shape
    scores = np.empty(k)
    for r in range(k):
        n_hits = 0
        norm = 0.0
        for j in range(m):
            if positions[r, j] < n_genes:
                n_hits += 1
                norm += sorted_weights[positions[r, j]]
        if n_hits == 0 or n_hits == n_genes:
            scores[r] = np.nan
            continue
        equal_weights = norm == 0.0
        if equal_weights:
            norm = float(n_hits)
        miss_step = 1.0 / (n_genes - n_hits)

        running = 0.0
        max_dev = 0.0
        min_dev = 0.0
        j = 0
        for i in range(n_genes):
            if j < m and positions[r, j] == i:
                running += (1.0 if equal_weights else sorted_weights[i]) / norm
                j += 1
            else:
                running -= miss_step
            if running > max_dev:
                max_dev = running
            if running < min_dev:
                min_dev = running
        scores[r] = max_dev if max_dev > -min_dev else min_dev
    return scores


#  Gene set statistics

def _gather(values: np.ndarray, members: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Member values (NaN for padding) and member counts per row."""
    valid = members >= 0
    x = np.where(valid, values[np.where(valid, members, 0)], np.nan)
    return x, valid.sum(axis=1)


def _rowwise(statistic: np.ndarray, counts: np.ndarray) -> np.ndarray:
    return np.where(counts > 0, statistic, np.nan)


def fisher_statistic(values, members, gsea_param=1.0):
    """Fisher's combined statistic, -2 * sum(log p)."""
    x, counts = _gather(values, members)
    with np.errstate(divide="ignore"):
        statistic = -2.0 * np.nansum(np.log(x), axis=1)
    return _rowwise(statistic, counts)


def _inverse_normal(x):
    return stats.norm.isf(np.minimum(x, _P_MAX))


def stouffer_statistic(values, members, gsea_param=1.0):
    """Stouffer's statistic, sum of inverse-normal p-values over sqrt(n)."""
    x, counts = _gather(values, members)
    with np.errstate(divide="ignore", invalid="ignore"):
        statistic = np.nansum(_inverse_normal(x), axis=1) / np.sqrt(counts)
    return _rowwise(statistic, counts)


def reporter_statistic(values, members, gsea_param=1.0):
    """Reporter feature statistic, mean of inverse-normal p-values."""
    x, counts = _gather(values, members)
    with np.errstate(divide="ignore", invalid="ignore"):
        statistic = np.nansum(_inverse_normal(x), axis=1) / counts
    return _rowwise(statistic, counts)


def tail_strength_statistic(values, members, gsea_param=1.0):
    """
    Tail strength of the member p-values.

    Each gene contributes 1 - p * (N + 1) / rank, where rank is the rank of its
    p-value among all N genes; the statistic is the member mean. Positive
    values indicate more small p-values than expected by chance.
    """
    n_genes = values.shape[0]
    terms = 1.0 - values * (n_genes + 1) / rankdata(values)
    x, counts = _gather(terms, members)
    with np.errstate(divide="ignore", invalid="ignore"):
        statistic = np.nansum(x, axis=1) / counts
    return _rowwise(statistic, counts)


def wilcoxon_statistic(values, members, gsea_param=1.0):
    """Wilcoxon rank-sum of the members among all genes (average ranks for ties)."""
    x, counts = _gather(rankdata(values), members)
    return _rowwise(np.nansum(x, axis=1), counts)


def mean_statistic(values, members, gsea_param=1.0):
    x, counts = _gather(values, members)
    with np.errstate(divide="ignore", invalid="ignore"):
        statistic = np.nansum(x, axis=1) / counts
    return _rowwise(statistic, counts)


def median_statistic(values, members, gsea_param=1.0):
    x, counts = _gather(values, members)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        statistic = np.nanmedian(x, axis=1)
    return _rowwise(statistic, counts)


def sum_statistic(values, members, gsea_param=1.0):
    x, counts = _gather(values, members)
    return _rowwise(np.nansum(x, axis=1), counts)


def _maxmean_parts(values, members):
    x, counts = _gather(values, members)
    with np.errstate(divide="ignore", invalid="ignore"):
        positive = np.nansum(np.maximum(x, 0.0), axis=1) / counts
        negative = np.nansum(np.maximum(-x, 0.0), axis=1) / counts
    return _rowwise(positive, counts), _rowwise(negative, counts)


def maxmean_statistic(values, members, gsea_param=1.0):
    """
    Efron-Tibshirani maxmean statistic.

    The positive and negative parts are averaged over all members; the larger
    one is returned, negated when it is the negative part.
    """
    positive, negative = _maxmean_parts(values, members)
    return np.where(positive >= negative, positive, -negative)


def maxmean_positive(values, members, gsea_param=1.0):
    """Positive part of the maxmean statistic."""
    return _maxmean_parts(values, members)[0]


def maxmean_negative(values, members, gsea_param=1.0):
    """Negative part of the maxmean statistic, as a positive number."""
    return _maxmean_parts(values, members)[1]


def _ranked_positions(values, members):
    """Sorted ranking positions (decreasing value) of members, padded with N."""
    n_genes = values.shape[0]
    order = np.argsort(-values, kind="mergesort")
    rank_position = np.empty(n_genes, dtype=np.int64)
    rank_position[order] = np.arange(n_genes)
    valid = members >= 0
    positions = np.where(valid, rank_position[np.where(valid, members, 0)], n_genes)
    return values[order], np.sort(positions, axis=1)


def gsea_statistic(values, members, gsea_param=1.0):
    """
    GSEA enrichment score from an explicit walk along the ranked gene list.

    Genes are ranked by decreasing value. Walking down the list, a member adds
    |value|^gsea_param (normalised over members) to the running sum and a
    non-member subtracts 1 / (N - n). The score is the maximum deviation from
    zero, keeping its sign.
    """
    sorted_values, positions = _ranked_positions(values, members)
    weights = np.abs(sorted_values) ** gsea_param
    return _enrichment_walk(weights, positions, values.shape[0])


def fast_gsea_statistic(values, members, gsea_param=1.0):
    """
    GSEA enrichment score computed from the member positions only.

    Gives the same score as gsea_statistic: the running-sum extremes can only
    occur just after a hit (maximum) or just before one (minimum).
    """
    n_genes = values.shape[0]
    if members.shape[1] == 0:
        return np.full(members.shape[0], np.nan)
    sorted_values, positions = _ranked_positions(values, members)
    valid = positions < n_genes
    n_hits = valid.sum(axis=1)

    weights = np.where(valid, np.abs(sorted_values[np.minimum(positions, n_genes - 1)]) ** gsea_param, 0.0)
    norm = weights.sum(axis=1)
    equal_weights = norm == 0
    weights[equal_weights] = valid[equal_weights].astype(np.float64)
    norm = weights.sum(axis=1)

    with np.errstate(divide="ignore", invalid="ignore"):
        cumulative = np.cumsum(weights, axis=1) / norm[:, None]
        misses = (positions - np.arange(positions.shape[1])) / (n_genes - n_hits)[:, None]
        after_hit = np.where(valid, cumulative - misses, -np.inf)
        before_hit = np.where(valid, cumulative - weights / norm[:, None] - misses, np.inf)
    max_dev = np.maximum(after_hit.max(axis=1), 0.0)
    min_dev = np.minimum(before_hit.min(axis=1), 0.0)
    scores = np.where(max_dev > -min_dev, max_dev, min_dev)
    scores[(n_hits == 0) | (n_hits == n_genes)] = np.nan
    return scores


def page_statistic(values, members, gsea_param=1.0):
    """
    PAGE z-score of the member mean against all genes.

    z = (mean_in - mean_all) / (sd_all * sqrt((N - n) / (N * n)))
    """
    n_genes = values.shape[0]
    mean_all = values.mean()
    sd_all = values.std()
    x, counts = _gather(values, members)
    with np.errstate(divide="ignore", invalid="ignore"):
        mean_in = np.nansum(x, axis=1) / counts
        standard_error = sd_all * np.sqrt((n_genes - counts) / (n_genes * counts))
        z = (mean_in - mean_all) / standard_error
    return np.where((counts > 0) & (standard_error > 0), z, np.nan)


CALCULATORS: Dict[GeneSetStatistic, Callable] = {
    GeneSetStatistic.FISHER: fisher_statistic,
    GeneSetStatistic.STOUFFER: stouffer_statistic,
    GeneSetStatistic.REPORTER: reporter_statistic,
    GeneSetStatistic.TAIL_STRENGTH: tail_strength_statistic,
    GeneSetStatistic.WILCOXON: wilcoxon_statistic,
    GeneSetStatistic.MEAN: mean_statistic,
    GeneSetStatistic.MEDIAN: median_statistic,
    GeneSetStatistic.SUM: sum_statistic,
    GeneSetStatistic.MAXMEAN: maxmean_statistic,
    GeneSetStatistic.GSEA: gsea_statistic,
    GeneSetStatistic.FGSEA: fast_gsea_statistic,
    GeneSetStatistic.PAGE: page_statistic,
}

# Gene-sampling backgrounds use the position-based enrichment score
BACKGROUND_CALCULATORS: Dict[GeneSetStatistic, Callable] = {
    GeneSetStatistic.GSEA: fast_gsea_statistic,
}


#  Significance

def empirical_pvalues(observed, background, tail: str = UPPER) -> np.ndarray:
    """
    Empirical p-values of observed statistics against one background.

    p = (number of background values at least as extreme + 1) / (background size + 1).
    NaN background values are left out.

    Args:
        observed: Observed statistics
        background: Statistics under the null
        tail: 'upper' if large statistics are significant, 'lower' otherwise

    Returns:
        Array of p-values in (0, 1], NaN where the observed statistic is NaN
    """
    observed = np.asarray(observed, dtype=np.float64)
    background = np.asarray(background, dtype=np.float64)
    background = background[~np.isnan(background)]
    if background.size == 0:
        return np.full(observed.shape, np.nan)

    counts = _count_at_least_as_extreme(observed, background, tail == UPPER)
    pvalues = (counts + 1.0) / (background.size + 1.0)
    pvalues[np.isnan(observed)] = np.nan
    return pvalues


def _tail_probability(distribution, x, tail):
    return distribution.sf(x) if tail == UPPER else distribution.cdf(x)


def _fisher_null(observed, n_members, values, tail):
    return _tail_probability(stats.chi2(2 * n_members), observed, tail)


def _stouffer_null(observed, n_members, values, tail):
    return _tail_probability(stats.norm, observed, tail)


def _reporter_null(observed, n_members, values, tail):
    return _tail_probability(stats.norm, observed * np.sqrt(n_members), tail)


def _wilcoxon_null(observed, n_members, values, tail):
    """Normal approximation of the rank-sum with tie and continuity corrections."""
    n_genes = values.shape[0]
    n_out = n_genes - n_members
    expected = n_members * (n_genes + 1) / 2.0
    _, ties = np.unique(values, return_counts=True)
    tie_correction = 1.0 - np.sum(ties ** 3 - ties) / (n_genes ** 3 - n_genes)
    variance = n_members * n_out * (n_genes + 1) / 12.0 * tie_correction
    with np.errstate(divide="ignore", invalid="ignore"):
        if tail == UPPER:
            pvalues = stats.norm.sf((observed - 0.5 - expected) / np.sqrt(variance))
        else:
            pvalues = stats.norm.cdf((observed + 0.5 - expected) / np.sqrt(variance))
    return np.where(variance > 0, pvalues, np.nan)


def _page_null(observed, n_members, values, tail):
    return _tail_probability(stats.norm, observed, tail)


NULL_DISTRIBUTIONS: Dict[GeneSetStatistic, Callable] = {
    GeneSetStatistic.FISHER: _fisher_null,
    GeneSetStatistic.STOUFFER: _stouffer_null,
    GeneSetStatistic.REPORTER: _reporter_null,
    GeneSetStatistic.WILCOXON: _wilcoxon_null,
    GeneSetStatistic.PAGE: _page_null,
}


def null_distribution_pvalues(
    gene_set_stat: GeneSetStatistic,
    observed,
    n_members,
    values: np.ndarray,
    tail: str = UPPER,
) -> np.ndarray:
    """
    P-values from the theoretical null distribution of a statistic.

    Args:
        gene_set_stat: Statistic the observed values were computed with
        observed: Observed statistics
        n_members: Number of genes each statistic was computed on
        values: Gene-level vector the statistics were computed on
        tail: 'upper' or 'lower'

    Returns:
        Array of p-values, NaN where the statistic is NaN
    """
    observed = np.asarray(observed, dtype=np.float64)
    n_members = np.asarray(n_members, dtype=np.float64)
    null = NULL_DISTRIBUTIONS[gene_set_stat]
    pvalues = np.full(observed.shape, np.nan)
    ok = ~np.isnan(observed) & (n_members > 0)
    if np.any(ok):
        pvalues[ok] = null(observed[ok], n_members[ok], values, tail)
    return pvalues


#  Multiple testing

_MULTIPLETESTS_METHODS = {
    "holm": "holm",
    "hochberg": "simes-hochberg",
    "hommel": "hommel",
    "bonferroni": "bonferroni",
    "BH": "fdr_bh",
    "fdr": "fdr_bh",
    "BY": "fdr_by",
}


def adjust_pvalues(p_values, method: str = "fdr") -> np.ndarray:
    """
    Adjust p-values for multiple testing.

    Args:
        p_values: Raw p-values; NaN entries are left untouched and not counted
        method: 'holm', 'hochberg', 'hommel', 'bonferroni', 'BH', 'BY', 'fdr' or 'none'

    Returns:
        Array of adjusted p-values
    """
    p_values = np.asarray(p_values, dtype=np.float64)
    if method == "none":
        return p_values.copy()
    if method not in _MULTIPLETESTS_METHODS:
        raise ConfigError(f"Unknown p-value adjustment method: {method}")

    adjusted = np.full(p_values.shape, np.nan)
    finite = ~np.isnan(p_values)
    if np.any(finite):
        _, pvals_corrected, _, _ = multipletests(
            p_values[finite],
            method=_MULTIPLETESTS_METHODS[method]
        )
        adjusted[finite] = pvals_corrected
    return adjusted


def gsea_fdr(observed, backgrounds: Sequence[np.ndarray]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    GSEA false discovery rates from normalised enrichment scores.

    Each score is divided by the mean of the same-signed scores of its own
    background (NES). For a positive NES the q-value is the fraction of
    positive null NES at least as large, over the fraction of positive
    observed NES at least as large; negative scores mirror this.

    Args:
        observed: Observed enrichment scores
        backgrounds: Null enrichment scores for each gene set (may be shared)

    Returns:
        Tuple of (q_up, q_dn, nes). q_up is 1 for negative scores and q_dn is
        1 for positive scores.
    """
    observed = np.asarray(observed, dtype=np.float64)
    n_sets = observed.shape[0]
    nes = np.full(n_sets, np.nan)

    null = {}
    multiplicity: Dict[int, int] = {}
    for i in range(n_sets):
        bg = backgrounds[i]
        key = id(bg)
        if key not in null:
            b = bg[~np.isnan(bg)]
            pos, neg = b[b >= 0], b[b < 0]
            mean_pos = pos.mean() if pos.size else np.nan
            mean_neg = -neg.mean() if neg.size else np.nan
            with np.errstate(divide="ignore", invalid="ignore"):
                null[key] = (
                    mean_pos,
                    mean_neg,
                    np.sort(pos / mean_pos) if mean_pos > 0 else np.empty(0),
                    np.sort(neg / mean_neg) if mean_neg > 0 else np.empty(0),
                )
            multiplicity[key] = 0
        multiplicity[key] += 1

        mean_pos, mean_neg = null[key][:2]
        es = observed[i]
        if np.isnan(es):
            continue
        scale = mean_pos if es >= 0 else mean_neg
        if scale > 0:
            nes[i] = es / scale

    total_pos = sum(multiplicity[k] * null[k][2].size for k in null)
    total_neg = sum(multiplicity[k] * null[k][3].size for k in null)
    observed_pos = nes[nes >= 0]
    observed_neg = nes[nes < 0]

    q_up = np.where(np.isnan(nes), np.nan, 1.0)
    q_dn = q_up.copy()
    for i in np.flatnonzero(~np.isnan(nes)):
        x = nes[i]
        if x >= 0:
            if total_pos == 0:
                continue
            null_frac = sum(
                multiplicity[k] * (null[k][2].size - np.searchsorted(null[k][2], x, side="left"))
                for k in null
            ) / total_pos
            observed_frac = np.mean(observed_pos >= x)
            q_up[i] = min(1.0, null_frac / observed_frac)
        else:
            if total_neg == 0:
                continue
            null_frac = sum(
                multiplicity[k] * np.searchsorted(null[k][3], x, side="right")
                for k in null
            ) / total_neg
            observed_frac = np.mean(observed_neg <= x)
            q_dn[i] = min(1.0, null_frac / observed_frac)
    return q_up, q_dn, nes


def concatenate_backgrounds(shards: List[Dict]) -> Dict:
    """Merge per-shard background dictionaries by concatenating their arrays."""
    merged: Dict = {}
    for shard in shards:
        for key, values in shard.items():
            merged.setdefault(key, []).append(values)
    return {key: np.concatenate(parts, axis=-1) for key, parts in merged.items()}
