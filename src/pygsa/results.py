"""Result object of a gene set analysis run."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
import polars as pl

from .config import DirectionalityClass, GeneSetStatistic, SignificanceMethod
from .utils import ensure_dir

logger = logging.getLogger(__name__)


def _readonly(array: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if array is None:
        return None
    array = np.array(array, copy=True)
    array.flags.writeable = False
    return array


def _readonly_by_class(arrays: Mapping[DirectionalityClass, np.ndarray]):
    return MappingProxyType({cls: _readonly(values) for cls, values in arrays.items()})


@dataclass(frozen=True)
class GSAResult:
    """
    Outcome of one gene set analysis.

    Per-class arrays are keyed by DirectionalityClass and aligned with
    gene_set_names. A class missing from the mappings was not computed for
    this statistic / significance method / input combination; a NaN entry
    marks a single gene set for which the class could not be computed.
    All arrays are read-only.
    """

    gene_stat_type: str
    gene_set_stat: GeneSetStatistic
    signif_method: SignificanceMethod
    adj_method: str
    gs_size_lim: Tuple[float, float]
    n_perm: Optional[int]
    gsea_param: float
    gene_level_stats: Mapping[str, float]
    directions: Optional[Mapping[str, float]]
    gsc: Mapping[str, Tuple[str, ...]]
    gene_set_names: Tuple[str, ...]
    n_genes_tot: np.ndarray
    n_genes_up: Optional[np.ndarray]
    n_genes_dn: Optional[np.ndarray]
    statistics: Mapping[DirectionalityClass, np.ndarray]
    pvalues: Mapping[DirectionalityClass, np.ndarray]
    adj_pvalues: Mapping[DirectionalityClass, np.ndarray]
    run_time: float
    gsc_info: Optional[Mapping[str, str]] = None
    nes: Optional[np.ndarray] = field(default=None)

    @classmethod
    def assemble(
        cls,
        *,
        statistics: Dict[DirectionalityClass, np.ndarray],
        pvalues: Dict[DirectionalityClass, np.ndarray],
        adj_pvalues: Dict[DirectionalityClass, np.ndarray],
        n_genes_tot,
        n_genes_up=None,
        n_genes_dn=None,
        nes=None,
        **metadata,
    ) -> "GSAResult":
        """Build a result, freezing every array and mapping it holds."""
        return cls(
            statistics=_readonly_by_class(statistics),
            pvalues=_readonly_by_class(pvalues),
            adj_pvalues=_readonly_by_class(adj_pvalues),
            n_genes_tot=_readonly(n_genes_tot),
            n_genes_up=_readonly(n_genes_up),
            n_genes_dn=_readonly(n_genes_dn),
            nes=_readonly(nes),
            **metadata,
        )

    @property
    def computed_classes(self) -> List[DirectionalityClass]:
        return [c for c in DirectionalityClass if c in self.pvalues]

    def __len__(self):
        return len(self.gene_set_names)

    def statistic(self, cls) -> Optional[np.ndarray]:
        """Statistics of a class, None if the class was not computed."""
        return self.statistics.get(DirectionalityClass(cls))

    def pvalue(self, cls) -> Optional[np.ndarray]:
        """Raw p-values of a class, None if the class was not computed."""
        return self.pvalues.get(DirectionalityClass(cls))

    def adj_pvalue(self, cls) -> Optional[np.ndarray]:
        """Adjusted p-values of a class, None if the class was not computed."""
        return self.adj_pvalues.get(DirectionalityClass(cls))

    def summary_table(self) -> pl.DataFrame:
        """
        One row per gene set with counts and per-class statistics and p-values.

        Returns:
            polars DataFrame; columns of classes that were not computed are absent
        """
        columns = {
            "gene_set": list(self.gene_set_names),
            "n_genes_tot": self.n_genes_tot,
        }
        if self.n_genes_up is not None:
            columns["n_genes_up"] = self.n_genes_up
            columns["n_genes_dn"] = self.n_genes_dn
        for cls in self.computed_classes:
            columns[f"stat_{cls.value}"] = self.statistics[cls]
            columns[f"p_{cls.value}"] = self.pvalues[cls]
            columns[f"p_adj_{cls.value}"] = self.adj_pvalues[cls]
        if self.nes is not None:
            columns["nes"] = self.nes
        if self.gsc_info is not None:
            columns["info"] = [self.gsc_info.get(name) for name in self.gene_set_names]
        # NaN marks a gene set where the class was not computable
        return pl.DataFrame(columns).with_columns(pl.col(pl.Float64).fill_nan(None))

    def top_sets(self, cls, n: int = 10) -> pl.DataFrame:
        """
        Gene sets with the smallest adjusted p-values in one class.

        Args:
            cls: Directionality class
            n: Number of gene sets to return

        Returns:
            polars DataFrame with gene set, statistic, p-value and adjusted p-value
        """
        cls = DirectionalityClass(cls)
        if cls not in self.pvalues:
            raise KeyError(f"Class '{cls.value}' was not computed in this analysis")
        table = pl.DataFrame({
            "gene_set": list(self.gene_set_names),
            "stat": self.statistics[cls],
            "p": self.pvalues[cls],
            "p_adj": self.adj_pvalues[cls],
        }).with_columns(pl.col(pl.Float64).fill_nan(None))
        return table.sort(["p_adj", "p"], nulls_last=True).head(n)

    def write_summary(self, output_path: Union[str, Path]) -> Path:
        """Write the summary table as tab-separated (.tsv) or comma-separated text.

        Args:
            output_path: File to write; parent directories are created

        Returns:
            Path of the written file
        """
        output_path = Path(output_path)
        ensure_dir(output_path.parent)
        separator = "\t" if output_path.suffix in (".tsv", ".txt") else ","
        self.summary_table().write_csv(output_path, separator=separator)
        logger.info(f"Saved summary of {len(self)} gene sets to {output_path}")
        return output_path
