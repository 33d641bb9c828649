"""Significance estimation for gene set statistics."""

import logging
import platform
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from tqdm.auto import tqdm

from .config import DirectionalityClass, GSAConfig, SignificanceMethod
from .data import FilteredCollection, GeneLevelData
from .directional import ClassSpec, class_vectors, needed_vectors, subset_members
from .stats import (
    _sample_gene_sets,
    concatenate_backgrounds,
    empirical_pvalues,
    null_distribution_pvalues,
)

logger = logging.getLogger(__name__)

# ASCII bars on macOS terminals
tqdm_kwargs = {
    'leave': True,
    'dynamic_ncols': True,
    'ascii': platform.system() == 'Darwin',
}

# Upper bound on gene indices drawn at once per size class
_DRAW_BATCH_ELEMENTS = 5_000_000


@dataclass
class AnalysisContext:
    """Everything an estimator needs, fully materialised before computation."""

    config: GSAConfig
    data: GeneLevelData
    collection: FilteredCollection
    specs: List[ClassSpec]
    vectors: Dict[str, np.ndarray]
    members: np.ndarray
    perm_stats: Optional[np.ndarray] = None
    perm_signs: Optional[np.ndarray] = None


@dataclass
class SignificanceResult:
    """Observed statistics and p-values per directionality class.

    backgrounds holds, per class, the null statistics each gene set was
    compared with (arrays are shared between gene sets of the same size
    under gene sampling). It is empty for the theoretical null distribution.
    """

    statistics: Dict[DirectionalityClass, np.ndarray]
    pvalues: Dict[DirectionalityClass, np.ndarray]
    n_members: Dict[DirectionalityClass, np.ndarray]
    backgrounds: Dict[DirectionalityClass, List[np.ndarray]] = field(default_factory=dict)


def observed_statistics(
    vectors: Dict[str, np.ndarray],
    members: np.ndarray,
    signs: Optional[np.ndarray],
    specs: Sequence[ClassSpec],
    gsea_param: float,
    background: bool = False,
) -> Tuple[Dict[DirectionalityClass, np.ndarray], Dict[DirectionalityClass, np.ndarray]]:
    """
    Compute the statistic of every class for every row of a member matrix.

    Classes sharing vector, subset and calculator are computed once.

    Args:
        vectors: Gene-level vectors keyed as in ClassSpec.vector
        members: (k, m) gene index matrix padded with -1
        signs: Gene direction signs for the mixed-directional subsets
        specs: Classes to compute
        gsea_param: Enrichment score exponent
        background: Use the background calculators

    Returns:
        Tuple of (statistics, number of members used) keyed by class
    """
    cache = {}
    statistics, n_members = {}, {}
    for spec in specs:
        calculator = spec.background_calculator if background else spec.calculator
        key = (spec.vector, spec.subset, calculator)
        if key not in cache:
            used = subset_members(members, signs, spec.subset)
            cache[key] = (
                calculator(vectors[spec.vector], used, gsea_param),
                (used >= 0).sum(axis=1),
            )
        statistics[spec.cls], n_members[spec.cls] = cache[key]
    return statistics, n_members


def _shard_sizes(total: int, parallelism: int) -> List[int]:
    n_shards = max(1, min(parallelism, total))
    return [len(chunk) for chunk in np.array_split(np.arange(total), n_shards)]


def _run_shards(worker: Callable, tasks: List[dict], parallelism: int, verbose: bool, desc: str) -> List:
    """
    Run independent shards of a permutation loop and return their results in order.

    Any shard failure aborts the whole run.
    """
    if parallelism == 1 or len(tasks) == 1:
        return [worker(**task, verbose=verbose) for task in tasks]

    results = [None] * len(tasks)
    # Use ProcessPoolExecutor for better exception handling than multiprocessing.Pool
    with ProcessPoolExecutor(max_workers=parallelism) as executor:
        futures = {
            executor.submit(worker, **task, verbose=False): i
            for i, task in enumerate(tasks)
        }
        with tqdm(total=len(futures), desc=desc, unit="shard", disable=not verbose, **tqdm_kwargs) as pbar:
            for future in as_completed(futures):
                i = futures[future]
                try:
                    results[i] = future.result()
                except Exception as e:
                    logger.error(f"Error in permutation shard {i}: {str(e)}")
                    for other in futures:
                        other.cancel()
                    raise
                pbar.update(1)
    return results


# Define worker functions outside classes (needed for multiprocessing)
def _gene_sampling_shard(
    vectors: Dict[str, np.ndarray],
    signs: Optional[np.ndarray],
    specs: List[ClassSpec],
    sizes: List[int],
    n_draws: int,
    seed: np.random.SeedSequence,
    gsea_param: float,
    verbose: bool = False,
) -> Dict[Tuple[DirectionalityClass, int], np.ndarray]:
    """
    Background statistics of random gene sets for every size class.

    Args:
        vectors: Gene-level vectors keyed as in ClassSpec.vector
        signs: Gene direction signs for the mixed-directional subsets
        specs: Classes to compute
        sizes: Gene set sizes needing a background
        n_draws: Random gene sets per size in this shard
        seed: Independent seed sequence for this shard
        gsea_param: Enrichment score exponent
        verbose: Show a progress bar over size classes

    Returns:
        Dictionary (class, size) -> background statistics
    """
    rng = np.random.default_rng(seed)
    n_genes = next(iter(vectors.values())).shape[0]
    backgrounds = {}

    for size in tqdm(sizes, desc="Gene sampling", unit="size", disable=not verbose, **tqdm_kwargs):
        batch = max(1, _DRAW_BATCH_ELEMENTS // size)
        parts = {spec.cls: [] for spec in specs}
        remaining = n_draws
        while remaining > 0:
            n = min(batch, remaining)
            draws = _sample_gene_sets(n_genes, size, n, int(rng.integers(0, 2**31 - 1)))
            statistics, _ = observed_statistics(vectors, draws, signs, specs, gsea_param, background=True)
            for cls, values in statistics.items():
                parts[cls].append(values)
            remaining -= n
        for cls, chunks in parts.items():
            backgrounds[(cls, size)] = np.concatenate(chunks)
    return backgrounds


def _gene_sampling(ctx: AnalysisContext, statistics, n_members) -> SignificanceResult:
    """Empirical p-values against random gene sets of the same size."""
    config = ctx.config
    n_tot = ctx.collection.n_genes_tot
    sizes = sorted(int(s) for s in np.unique(n_tot))
    logger.info(f"Sampling {config.n_perm} random gene sets for each of {len(sizes)} gene set sizes")

    shard_draws = _shard_sizes(config.n_perm, config.parallelism)
    seeds = np.random.SeedSequence(config.seed).spawn(len(shard_draws))
    tasks = [
        dict(
            vectors=ctx.vectors,
            signs=ctx.data.signs,
            specs=ctx.specs,
            sizes=sizes,
            n_draws=n,
            seed=seed,
            gsea_param=config.gsea_param,
        )
        for n, seed in zip(shard_draws, seeds)
    ]
    shards = _run_shards(_gene_sampling_shard, tasks, config.parallelism, config.verbose, "Gene sampling")
    merged = concatenate_backgrounds(shards)

    pvalues, backgrounds = {}, {}
    for spec in ctx.specs:
        observed = statistics[spec.cls]
        p = np.full(observed.shape, np.nan)
        per_set: List[Optional[np.ndarray]] = [None] * observed.shape[0]
        for size in sizes:
            idx = np.flatnonzero(n_tot == size)
            bg = merged[(spec.cls, size)]
            p[idx] = empirical_pvalues(observed[idx], bg, spec.tail)
            for i in idx:
                per_set[i] = bg
            logger.debug(f"{spec.cls.value}: size {size} background has {np.sum(~np.isnan(bg))} valid draws")
        pvalues[spec.cls] = p
        backgrounds[spec.cls] = per_set
    return SignificanceResult(statistics, pvalues, n_members, backgrounds)


def _sample_permutation_shard(
    perm_stats: np.ndarray,
    perm_signs: Optional[np.ndarray],
    stat_type: str,
    members: np.ndarray,
    specs: List[ClassSpec],
    gsea_param: float,
    verbose: bool = False,
) -> Dict[DirectionalityClass, np.ndarray]:
    """
    Gene set statistics recomputed on a block of permutation columns.

    Returns:
        Dictionary class -> (n_sets, n_columns) statistics
    """
    needed = needed_vectors(specs)
    n_columns = perm_stats.shape[1]
    out = {spec.cls: np.empty((members.shape[0], n_columns)) for spec in specs}
    for j in tqdm(range(n_columns), desc="Sample permutations", unit="perm",
                  disable=not verbose, **tqdm_kwargs):
        signs = perm_signs[:, j] if perm_signs is not None else None
        vectors = class_vectors(perm_stats[:, j], stat_type, signs, needed)
        statistics, _ = observed_statistics(vectors, members, signs, specs, gsea_param)
        for cls, values in statistics.items():
            out[cls][:, j] = values
    return out


def _sample_permutation(ctx: AnalysisContext, statistics, n_members) -> SignificanceResult:
    """Empirical p-values against statistics of sample-label permutations."""
    config = ctx.config
    perm_stats = ctx.perm_stats
    n_perm = perm_stats.shape[1]
    logger.info(f"Recomputing gene set statistics for {n_perm} sample permutations")

    bounds = np.cumsum([0] + _shard_sizes(n_perm, config.parallelism))
    tasks = [
        dict(
            perm_stats=perm_stats[:, start:stop],
            perm_signs=None if ctx.perm_signs is None else ctx.perm_signs[:, start:stop],
            stat_type=ctx.data.stat_type,
            members=ctx.members,
            specs=ctx.specs,
            gsea_param=config.gsea_param,
        )
        for start, stop in zip(bounds[:-1], bounds[1:])
    ]
    shards = _run_shards(_sample_permutation_shard, tasks, config.parallelism, config.verbose,
                         "Sample permutations")
    merged = concatenate_backgrounds(shards)

    pvalues, backgrounds = {}, {}
    for spec in ctx.specs:
        observed = statistics[spec.cls]
        null = merged[spec.cls]
        pvalues[spec.cls] = np.array([
            empirical_pvalues(observed[i:i + 1], null[i], spec.tail)[0]
            for i in range(observed.shape[0])
        ])
        backgrounds[spec.cls] = [null[i] for i in range(observed.shape[0])]
    return SignificanceResult(statistics, pvalues, n_members, backgrounds)


def _null_dist(ctx: AnalysisContext, statistics, n_members) -> SignificanceResult:
    """P-values from the theoretical null distribution of the statistic."""
    stat = ctx.config.gene_set_stat
    logger.info(f"Computing p-values from the theoretical null distribution of '{stat.value}'")
    pvalues = {
        spec.cls: null_distribution_pvalues(
            stat,
            statistics[spec.cls],
            n_members[spec.cls],
            ctx.vectors[spec.vector],
            spec.tail,
        )
        for spec in ctx.specs
    }
    return SignificanceResult(statistics, pvalues, n_members)


ESTIMATORS: Dict[SignificanceMethod, Callable[..., SignificanceResult]] = {
    SignificanceMethod.GENE_SAMPLING: _gene_sampling,
    SignificanceMethod.SAMPLE_PERMUTATION: _sample_permutation,
    SignificanceMethod.NULL_DIST: _null_dist,
}


def estimate_significance(ctx: AnalysisContext) -> SignificanceResult:
    """
    Compute observed gene set statistics and their p-values.

    Args:
        ctx: Analysis context with validated inputs

    Returns:
        SignificanceResult for every class in ctx.specs
    """
    statistics, n_members = observed_statistics(
        ctx.vectors, ctx.members, ctx.data.signs, ctx.specs, ctx.config.gsea_param
    )
    return ESTIMATORS[ctx.config.signif_method](ctx, statistics, n_members)
