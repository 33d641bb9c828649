"""Top-level gene set analysis: input checks, estimation and result assembly."""

import logging
import time
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Union

import numpy as np

from .config import DirectionalityClass, GeneSetStatistic, GSAConfig, SignificanceMethod
from .data import (
    GeneLevelData,
    GeneValues,
    align_permutation_matrix,
    check_stat_compatibility,
    filter_gene_sets,
    normalize_inputs,
    sign_of,
)
from .directional import class_layout, class_vectors, needed_vectors
from .exceptions import DegenerateInputError, InputMismatchError, MissingDirectionsError
from .results import GSAResult
from .significance import AnalysisContext, estimate_significance
from .stats import adjust_pvalues, gsea_fdr
from .utils import ensure_dir

logger = logging.getLogger(__name__)


def _resolve_config(config: Optional[GSAConfig], overrides: Dict) -> GSAConfig:
    if config is None:
        return GSAConfig.from_dict(overrides)
    if overrides:
        return config.replace(**overrides)
    return config


def _copy_collection(gsc) -> Dict[str, tuple]:
    if not isinstance(gsc, Mapping):
        raise InputMismatchError(
            f"gsc must be a mapping of gene set name to member genes, got {type(gsc).__name__}"
        )
    collection = {}
    for name, genes in gsc.items():
        if isinstance(genes, str):
            raise InputMismatchError(f"Members of gene set '{name}' must be a collection of gene ids")
        collection[str(name)] = tuple(str(g) for g in genes)
    return collection


def _prepare_permutations(
    data: GeneLevelData,
    config: GSAConfig,
    perm_stats,
    perm_directions,
    perm_row_ids: Optional[Iterable[str]],
):
    """Align and check the permutation matrices against the gene-level data.

    Returns:
        Tuple of (permuted statistics, permuted direction signs or None)
    """
    if perm_stats is None:
        raise InputMismatchError("signif_method='samplePermutation' requires perm_stats")
    if perm_row_ids is not None:
        perm_row_ids = list(perm_row_ids)

    perm = align_permutation_matrix(perm_stats, data.gene_ids, perm_row_ids, "perm_stats")
    if data.stat_type == "p":
        if np.any((perm < 0) | (perm > 1)):
            raise DegenerateInputError("perm_stats must lie within [0, 1] for p-value statistics")
        check_stat_compatibility(config.gene_set_stat, "p", perm)

    perm_signs = None
    if perm_directions is not None:
        if data.stat_type == "p" and not data.has_directions:
            logger.warning("Ignoring perm_directions: no gene directions were given")
        else:
            perm_dirs = align_permutation_matrix(
                perm_directions, data.gene_ids, perm_row_ids, "perm_directions"
            )
            if perm_dirs.shape != perm.shape:
                raise InputMismatchError(
                    f"perm_directions has shape {perm_dirs.shape}, perm_stats has {perm.shape}"
                )
            perm_signs = sign_of(perm_dirs)
    elif data.stat_type == "t":
        perm_signs = sign_of(perm)
    return perm, perm_signs


def _adjust(config: GSAConfig, specs, significance):
    """Adjusted p-values per class, plus NES when the GSEA FDR was used."""
    adj_pvalues = {}
    nes = None
    gsea_fdr_used = (
        config.gene_set_stat in (GeneSetStatistic.GSEA, GeneSetStatistic.FGSEA)
        and config.adj_method == "fdr"
        and config.signif_method is not SignificanceMethod.NULL_DIST
    )
    for spec in specs:
        cls = spec.cls
        if gsea_fdr_used and cls.is_distinct:
            q_up, q_dn, class_nes = gsea_fdr(significance.statistics[cls], significance.backgrounds[cls])
            q = q_up if cls is DirectionalityClass.DISTINCT_DIR_UP else q_dn
            # q-values never fall below the raw p-value
            adj_pvalues[cls] = np.maximum(q, significance.pvalues[cls])
            if nes is None:
                nes = class_nes
        else:
            adj_pvalues[cls] = adjust_pvalues(significance.pvalues[cls], config.adj_method)
    return adj_pvalues, nes


def run_gsa(
    gene_level_stats: GeneValues,
    gsc: Mapping[str, Iterable[str]],
    directions: Optional[GeneValues] = None,
    config: Optional[GSAConfig] = None,
    *,
    perm_stats=None,
    perm_directions=None,
    perm_row_ids: Optional[Iterable[str]] = None,
    gsc_info: Optional[Mapping[str, str]] = None,
    **overrides,
) -> GSAResult:
    """
    Run a gene set analysis.

    Args:
        gene_level_stats: Gene id -> p-value or signed score
        gsc: Gene set name -> member gene ids
        directions: Optional gene id -> direction (sign only)
        config: Analysis options; keyword overrides are applied on top
        perm_stats: Genes x permutations statistics for samplePermutation
        perm_directions: Genes x permutations directions for samplePermutation
        perm_row_ids: Row labels when perm_stats / perm_directions are arrays
        gsc_info: Optional annotation per gene set
        **overrides: Any GSAConfig option

    Returns:
        GSAResult with statistics, p-values and adjusted p-values per class
    """
    start_time = time.time()
    config = _resolve_config(config, overrides)
    collection_input = _copy_collection(gsc)

    logger.info(f"Starting gene set analysis with gene_set_stat='{config.gene_set_stat.value}', "
                f"signif_method='{config.signif_method.value}'")

    # Step 1: gene-level inputs
    data = normalize_inputs(gene_level_stats, config.gene_set_stat, directions)
    logger.info(f"Using {data.n_genes} genes with '{data.stat_type}' statistics"
                f"{' and directions' if data.has_directions else ''}")

    # Step 2: directionality classes
    specs = class_layout(
        config.gene_set_stat,
        data.stat_type,
        data.signs is not None,
        config.signif_method,
        config.classes,
    )
    logger.info(f"Computing classes: {', '.join(spec.cls.value for spec in specs)}")

    # Step 3: permutation inputs
    perm, perm_signs = None, None
    if config.signif_method is SignificanceMethod.SAMPLE_PERMUTATION:
        perm, perm_signs = _prepare_permutations(data, config, perm_stats, perm_directions, perm_row_ids)
        needs_perm_directions = data.stat_type == "p" and any(spec.cls.is_distinct for spec in specs)
        if needs_perm_directions and perm_signs is None:
            raise MissingDirectionsError(
                "perm_directions are required for distinct-directional classes with p-value statistics"
            )
        if perm.shape[1] != config.n_perm:
            logger.info(f"Using n_perm={perm.shape[1]} from the permutation columns "
                        f"instead of the configured {config.n_perm}")
            config = config.replace(n_perm=int(perm.shape[1]))
    elif perm_stats is not None or perm_directions is not None:
        logger.warning(f"Ignoring permutation inputs for signif_method='{config.signif_method.value}'")

    # Step 4: gene set filtering
    collection = filter_gene_sets(collection_input, data, config.gs_size_lim)

    # Step 5: statistics and significance
    ctx = AnalysisContext(
        config=config,
        data=data,
        collection=collection,
        specs=specs,
        vectors=class_vectors(data.stats, data.stat_type, data.signs, needed_vectors(specs)),
        members=collection.member_matrix(),
        perm_stats=perm,
        perm_signs=perm_signs,
    )
    significance = estimate_significance(ctx)

    # Step 6: multiple testing
    adj_pvalues, nes = _adjust(config, specs, significance)

    elapsed_time = time.time() - start_time
    logger.info(f"Gene set analysis completed in {elapsed_time:.2f} seconds")

    directions_echo = None
    if data.directions is not None:
        directions_echo = MappingProxyType(dict(zip(data.gene_ids, data.directions.tolist())))
    return GSAResult.assemble(
        statistics=significance.statistics,
        pvalues=significance.pvalues,
        adj_pvalues=adj_pvalues,
        n_genes_tot=collection.n_genes_tot,
        n_genes_up=collection.n_genes_up,
        n_genes_dn=collection.n_genes_dn,
        nes=nes,
        gene_stat_type=data.stat_type,
        gene_set_stat=config.gene_set_stat,
        signif_method=config.signif_method,
        adj_method=config.adj_method,
        gs_size_lim=config.gs_size_lim,
        n_perm=None if config.signif_method is SignificanceMethod.NULL_DIST else config.n_perm,
        gsea_param=config.gsea_param,
        gene_level_stats=MappingProxyType(dict(zip(data.gene_ids, data.stats.tolist()))),
        directions=directions_echo,
        gsc=MappingProxyType(collection_input),
        gene_set_names=collection.names,
        run_time=elapsed_time,
        gsc_info=None if gsc_info is None else MappingProxyType({str(k): v for k, v in gsc_info.items()}),
    )


class GeneSetAnalysis:
    """Gene set analysis driven by a configuration object or TOML file."""

    def __init__(self, config: Union[GSAConfig, str, Path, None] = None):
        """
        Initialize the analysis.

        Args:
            config: GSAConfig, path to a TOML file with an [analysis] table,
                or None for the default options
        """
        self.logger = logging.getLogger(__name__)
        if config is None:
            self.config = GSAConfig()
        elif isinstance(config, GSAConfig):
            self.config = config
        else:
            self.logger.info(f"Loading configuration from {config}")
            self.config = GSAConfig.from_toml(config)
        self.result: Optional[GSAResult] = None

    def run(self, gene_level_stats: GeneValues, gsc: Mapping[str, Iterable[str]],
            directions: Optional[GeneValues] = None, **kwargs) -> GSAResult:
        """Run the analysis; keyword arguments are passed on to run_gsa."""
        self.result = run_gsa(gene_level_stats, gsc, directions, self.config, **kwargs)
        return self.result

    def save_results(self, output_dir: Union[str, Path]) -> Optional[Path]:
        """
        Save the summary table and the configuration used.

        Args:
            output_dir: Directory for gsa_summary.tsv and config.toml

        Returns:
            Path of the output directory, None if nothing was run yet
        """
        if self.result is None:
            self.logger.warning("No results to save. Run the analysis first.")
            return None

        output_dir = ensure_dir(Path(output_dir))
        self.result.write_summary(output_dir / "gsa_summary.tsv")
        self.config.save_config(output_dir / "config.toml")
        self.logger.info(f"Saved configuration to {output_dir / 'config.toml'}")
        return output_dir
