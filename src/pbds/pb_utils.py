# src/pbds/pb_utils.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterator, Mapping, Optional, Sequence, Union

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .cell_table import (
    CLUSTER_KEY,
    GROUP_KEY,
    SAMPLE_KEY,
    check_group_keys,
    codes_for,
    get_assay,
    get_experiment_info,
    key_levels,
)
from .errors import EmptyInput, InvalidGroupKeys

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Engine notes
# -----------------------------------------------------------------------------
# - Works on an already-loaded AnnData (no disk IO).
# - Sum/mean/detection reductions go through a sparse indicator matrix
#   (PB = G.T @ X); the cell matrix is never densified as a whole.
# - median / custom callables densify one (cluster, sample) block at a time.
# - Missing combinations (zero cells, or fewer than min_cells) hold a
#   sentinel: 0 for count-like reductions, NaN otherwise.
# -----------------------------------------------------------------------------

SUMMARY_FUNS = ("sum", "mean", "median", "prop.detected", "num.detected")
_ZERO_SENTINEL_FUNS = ("sum", "num.detected")

SummaryFn = Union[str, Callable[[np.ndarray], np.ndarray]]

ALL_CELLS = "all"


def missing_sentinel(fun: SummaryFn) -> float:
    return 0.0 if isinstance(fun, str) and fun in _ZERO_SENTINEL_FUNS else np.nan


def _fun_name(fun: SummaryFn) -> str:
    if isinstance(fun, str):
        return fun
    return getattr(fun, "__name__", "custom")


# -----------------------------------------------------------------------------
# Collections
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class _ClusterMatrices:
    """
    Mapping cluster id -> (genes x columns) DataFrame.

    All matrices share one gene order and one column order. ``n_cells`` is a
    (clusters x columns) table with the number of cells behind every entry.
    """

    matrices: Mapping[str, pd.DataFrame]
    experiment_info: pd.DataFrame
    n_cells: pd.DataFrame
    assay: Optional[str]

    def __post_init__(self):
        shapes = {(tuple(m.index), tuple(m.columns)) for m in self.matrices.values()}
        if len(shapes) > 1:
            raise ValueError("all cluster matrices must share row and column order")

    # -- mapping protocol
    def __getitem__(self, cluster: str) -> pd.DataFrame:
        return self.matrices[str(cluster)].copy()

    def __iter__(self) -> Iterator[str]:
        return iter(self.matrices)

    def __len__(self) -> int:
        return len(self.matrices)

    def __contains__(self, cluster: object) -> bool:
        return str(cluster) in self.matrices

    @property
    def clusters(self) -> list[str]:
        return list(self.matrices.keys())

    @property
    def genes(self) -> pd.Index:
        first = next(iter(self.matrices.values()), None)
        return pd.Index([]) if first is None else first.index

    @property
    def columns(self) -> pd.Index:
        first = next(iter(self.matrices.values()), None)
        return pd.Index([]) if first is None else first.columns

    @property
    def samples(self) -> pd.Index:
        return pd.Index(self.experiment_info.index.astype(str), name=SAMPLE_KEY)

    def get(self, gene: str, cluster: str, column: str) -> float:
        """Single value lookup by (gene, cluster, sample-or-group)."""
        return float(self.matrices[str(cluster)].at[str(gene), str(column)])

    def to_long(self, value_name: str = "value") -> pd.DataFrame:
        """Tidy (gene, cluster_id, column, value) table over all clusters."""
        parts = []
        for cl, m in self.matrices.items():
            d = m.copy()
            d.index.name = "gene"
            d.columns.name = None
            d = d.reset_index().melt(id_vars="gene", var_name="column", value_name=value_name)
            d.insert(1, CLUSTER_KEY, cl)
            parts.append(d)
        if not parts:
            return pd.DataFrame(columns=["gene", CLUSTER_KEY, "column", value_name])
        return pd.concat(parts, ignore_index=True)


@dataclass(frozen=True)
class PseudobulkCollection(_ClusterMatrices):
    fun: str = "sum"
    min_cells: int = 0
    by: tuple = (CLUSTER_KEY, SAMPLE_KEY)

    def to_anndata(self) -> ad.AnnData:
        """
        Pack the collection into an AnnData: obs = columns, var = genes and one
        layer per cluster (columns x genes). Only sample-keyed collections keep
        experiment_info as obs.
        """
        cols = self.columns
        if list(cols) == list(self.samples):
            obs = self.experiment_info.copy()
        else:
            obs = pd.DataFrame(index=cols.astype(str))
        obs.index = obs.index.astype(str)
        var = pd.DataFrame(index=self.genes.astype(str))
        var.index.name = None
        obs.index.name = None

        out = ad.AnnData(obs=obs, var=var)
        for cl, m in self.matrices.items():
            out.layers[str(cl)] = m.T.to_numpy(dtype=np.float64)

        n_cells = self.n_cells.copy()
        n_cells.index = n_cells.index.astype(str)
        n_cells.columns = n_cells.columns.astype(str)
        out.uns["pbds"] = {
            "assay": "" if self.assay is None else str(self.assay),
            "fun": str(self.fun),
            "min_cells": int(self.min_cells),
            "by": [str(b) for b in self.by],
            "clusters": [str(c) for c in self.clusters],
        }
        out.uns["n_cells"] = n_cells
        return out

    @classmethod
    def from_anndata(cls, adata: ad.AnnData) -> "PseudobulkCollection":
        meta = adata.uns.get("pbds", {})
        clusters = list(meta.get("clusters", list(adata.layers.keys())))
        genes = pd.Index(adata.var_names.astype(str))
        cols = pd.Index(adata.obs_names.astype(str))
        matrices = {
            str(cl): pd.DataFrame(np.asarray(adata.layers[cl]).T, index=genes, columns=cols)
            for cl in clusters
        }
        ei = adata.obs.copy()
        n_cells = adata.uns.get("n_cells", None)
        if not isinstance(n_cells, pd.DataFrame):
            raise ValueError("uns['n_cells'] is missing; not a pseudo-bulk written by to_anndata")
        n_cells = n_cells.copy()
        n_cells.index = n_cells.index.astype(str)
        n_cells.columns = n_cells.columns.astype(str)
        return cls(
            matrices=matrices,
            experiment_info=ei,
            n_cells=n_cells,
            assay=meta.get("assay") or None,
            fun=str(meta.get("fun", "sum")),
            min_cells=int(meta.get("min_cells", 0)),
            by=tuple(meta.get("by", (CLUSTER_KEY, SAMPLE_KEY))),
        )


@dataclass(frozen=True)
class FrequencyCollection(_ClusterMatrices):
    threshold: float = 0.0
    sample_columns: tuple = field(default_factory=tuple)
    group_columns: tuple = field(default_factory=tuple)
    fun: str = "frq"


# -----------------------------------------------------------------------------
# Matrix helpers
# -----------------------------------------------------------------------------
def _as_matrix(X):
    """CSR for sparse input, ndarray otherwise. Never densifies sparse data."""
    if sp.issparse(X):
        return X.tocsr()
    if hasattr(X, "to_memory"):
        X = X.to_memory()
    LOGGER.debug("Assay matrix is dense; aggregation stays dense.")
    return np.asarray(X)


def _dense(m) -> np.ndarray:
    if sp.issparse(m):
        return m.toarray()
    return np.asarray(m)


def _indicator(codes: np.ndarray, n_groups: int) -> sp.csr_matrix:
    """Indicator matrix G: (cells x groups)."""
    rows = np.arange(codes.shape[0], dtype=np.int64)
    data = np.ones(rows.shape[0], dtype=np.float64)
    return sp.csr_matrix((data, (rows, codes.astype(np.int64, copy=False))), shape=(codes.shape[0], n_groups))


def _detected(X, threshold: float):
    """Boolean-as-float detection matrix (value > threshold)."""
    if sp.issparse(X):
        if threshold < 0:
            # implicit zeros would all count as detected
            LOGGER.warning("Negative detection threshold on sparse data; densifying.")
            return (X.toarray() > threshold).astype(np.float64)
        return (X > threshold).astype(np.float64)
    return (np.asarray(X) > threshold).astype(np.float64)


def _safe_divide(num: np.ndarray, den: np.ndarray) -> np.ndarray:
    out = np.full(num.shape, np.nan, dtype=np.float64)
    np.divide(num, den, out=out, where=den > 0)
    return out


def _reduce(X, G: sp.csr_matrix, combo: np.ndarray, n_cells: np.ndarray, fun: SummaryFn) -> np.ndarray:
    """Return (groups x genes) reduced values; entries for empty groups are left unspecified."""
    n_groups = G.shape[1]
    n_genes = X.shape[1]

    if fun == "sum":
        return _dense(G.T @ X).astype(np.float64, copy=False)
    if fun == "mean":
        return _safe_divide(_dense(G.T @ X), n_cells[:, None])
    if fun == "num.detected":
        return _dense(G.T @ _detected(X, 0.0))
    if fun == "prop.detected":
        return _safe_divide(_dense(G.T @ _detected(X, 0.0)), n_cells[:, None])

    if fun == "median":
        reducer = lambda block: np.median(block, axis=0)  # noqa: E731
    elif callable(fun):
        reducer = fun
    else:
        raise ValueError(f"Unknown summary function {fun!r}. Use one of {SUMMARY_FUNS} or a callable.")

    out = np.full((n_groups, n_genes), np.nan, dtype=np.float64)
    order = np.argsort(combo, kind="stable")
    bounds = np.searchsorted(combo[order], np.arange(n_groups + 1))
    for k in range(n_groups):
        idx = order[bounds[k]:bounds[k + 1]]
        if idx.size == 0:
            continue
        res = np.asarray(reducer(_dense(X[idx, :])), dtype=np.float64).ravel()
        if res.shape[0] != n_genes:
            raise ValueError(
                f"summary function returned {res.shape[0]} values, expected one per gene ({n_genes})"
            )
        out[k, :] = res
    return out


def _level_codes(adata: ad.AnnData, key: Optional[str]) -> tuple[pd.Index, np.ndarray]:
    if key is None:
        return pd.Index([ALL_CELLS]), np.zeros(adata.n_obs, dtype=np.int64)
    levels = key_levels(adata, key)
    codes = codes_for(adata, key, levels)
    if (codes < 0).any():
        raise InvalidGroupKeys(f"{key!r} has labels missing from its level set", keys=[key])
    return levels, codes


# -----------------------------------------------------------------------------
# Aggregator
# -----------------------------------------------------------------------------
def aggregate_data(
    adata: ad.AnnData,
    *,
    assay: Optional[str] = "counts",
    fun: SummaryFn = "sum",
    by: Sequence[str] = (CLUSTER_KEY, SAMPLE_KEY),
    min_cells: int = 0,
) -> PseudobulkCollection:
    """
    Aggregate single-cell values into pseudo-bulk matrices.

    Cells are partitioned by ``by``: with two keys the first one splits the
    output into matrices (usually clusters) and the second one defines the
    columns (usually samples); with a single key one matrix keyed ``"all"``
    is returned. Column order follows the experiment info for ``sample_id``
    and the label order of the key otherwise, so every matrix has identical
    columns even where a cluster has no cells for some sample.

    Returns:
      PseudobulkCollection with one (genes x columns) DataFrame per cluster and
      an ``n_cells`` (clusters x columns) table.

    Notes:
      - Combinations with zero cells, or fewer than ``min_cells``, carry the
        missing sentinel (0 for sum/num.detected, NaN otherwise).
    """
    if adata.n_obs == 0:
        raise EmptyInput("Cell table has zero cells.")

    X = _as_matrix(get_assay(adata, assay))
    by = check_group_keys(adata, by)
    if len(by) > 2:
        raise InvalidGroupKeys(f"by accepts one or two keys, got {by}", keys=by)
    if isinstance(fun, str) and fun not in SUMMARY_FUNS:
        raise ValueError(f"Unknown summary function {fun!r}. Use one of {SUMMARY_FUNS} or a callable.")

    split_key, col_key = (None, by[0]) if len(by) == 1 else (by[0], by[1])

    split_levels, split_codes = _level_codes(adata, split_key)
    col_levels, col_codes = _level_codes(adata, col_key)
    n_split, n_cols = len(split_levels), len(col_levels)

    combo = split_codes * n_cols + col_codes
    G = _indicator(combo, n_split * n_cols)
    n_cells = np.asarray(G.sum(axis=0)).ravel().astype(np.int64)

    values = _reduce(X, G, combo, n_cells, fun)

    sentinel = missing_sentinel(fun)
    missing = n_cells < max(int(min_cells), 1)
    values[missing, :] = sentinel

    genes = pd.Index(adata.var_names.astype(str), name=None)
    columns = pd.Index(col_levels.astype(str), name=col_key)

    matrices: dict[str, pd.DataFrame] = {}
    for i, cl in enumerate(split_levels.astype(str)):
        block = values[i * n_cols:(i + 1) * n_cols, :]
        matrices[str(cl)] = pd.DataFrame(block.T, index=genes, columns=columns)

    n_cells_df = pd.DataFrame(
        n_cells.reshape(n_split, n_cols),
        index=pd.Index(split_levels.astype(str), name=split_key or CLUSTER_KEY),
        columns=columns,
    )

    n_missing = int(missing.sum())
    LOGGER.info(
        "Aggregated %d cells into %d matrices x %d columns (assay=%s, fun=%s, min_cells=%d, missing=%d)",
        adata.n_obs,
        n_split,
        n_cols,
        assay,
        _fun_name(fun),
        int(min_cells),
        n_missing,
    )

    return PseudobulkCollection(
        matrices=matrices,
        experiment_info=get_experiment_info(adata).copy(),
        n_cells=n_cells_df,
        assay=assay,
        fun=_fun_name(fun),
        min_cells=int(min_cells),
        by=tuple(by),
    )


# -----------------------------------------------------------------------------
# Frequency calculator
# -----------------------------------------------------------------------------
def _fractions(det, adata: ad.AnnData, cl_codes: np.ndarray, n_cl: int, key: str) -> tuple[pd.Index, np.ndarray, np.ndarray]:
    levels, codes = _level_codes(adata, key)
    n = len(levels)
    G = _indicator(cl_codes * n + codes, n_cl * n)
    n_cells = np.asarray(G.sum(axis=0)).ravel()
    frac = _safe_divide(_dense(G.T @ det), n_cells[:, None])
    return levels, frac, n_cells.astype(np.int64)


def calc_expr_freqs(
    adata: ad.AnnData,
    *,
    assay: Optional[str] = "counts",
    threshold: float = 0.0,
) -> FrequencyCollection:
    """
    Fraction of cells with ``value > threshold`` per gene, for every
    (cluster, sample) and every (cluster, group).

    Each cluster matrix has the sample columns first, then one column per
    group. Groups without cells give NaN, never a division error.
    """
    if adata.n_obs == 0:
        raise EmptyInput("Cell table has zero cells.")
    check_group_keys(adata, (CLUSTER_KEY, SAMPLE_KEY, GROUP_KEY))

    X = _as_matrix(get_assay(adata, assay))
    det = _detected(X, float(threshold))

    cl_levels, cl_codes = _level_codes(adata, CLUSTER_KEY)
    n_cl = len(cl_levels)

    s_levels, s_frac, s_n = _fractions(det, adata, cl_codes, n_cl, SAMPLE_KEY)
    g_levels, g_frac, g_n = _fractions(det, adata, cl_codes, n_cl, GROUP_KEY)

    s_cols = [str(s) for s in s_levels]
    g_cols = [str(g) for g in g_levels]
    clash = sorted(set(s_cols) & set(g_cols))
    if clash:
        raise InvalidGroupKeys(
            f"sample and group ids overlap ({clash}); frequency columns would be ambiguous",
            keys=[SAMPLE_KEY, GROUP_KEY],
        )

    genes = pd.Index(adata.var_names.astype(str))
    columns = pd.Index(s_cols + g_cols)
    ns, ng = len(s_cols), len(g_cols)

    matrices: dict[str, pd.DataFrame] = {}
    n_rows = []
    for i, cl in enumerate(cl_levels.astype(str)):
        block = np.hstack([s_frac[i * ns:(i + 1) * ns, :].T, g_frac[i * ng:(i + 1) * ng, :].T])
        matrices[str(cl)] = pd.DataFrame(block, index=genes, columns=columns)
        n_rows.append(np.concatenate([s_n[i * ns:(i + 1) * ns], g_n[i * ng:(i + 1) * ng]]))

    n_cells = pd.DataFrame(np.vstack(n_rows), index=pd.Index(cl_levels.astype(str), name=CLUSTER_KEY), columns=columns)

    LOGGER.info(
        "Computed expression frequencies (assay=%s, threshold>%s): %d clusters x (%d samples + %d groups)",
        assay,
        threshold,
        n_cl,
        ns,
        ng,
    )

    return FrequencyCollection(
        matrices=matrices,
        experiment_info=get_experiment_info(adata).copy(),
        n_cells=n_cells,
        assay=assay,
        threshold=float(threshold),
        sample_columns=tuple(s_cols),
        group_columns=tuple(g_cols),
    )


# -----------------------------------------------------------------------------
# CPM from summed pseudo-bulks
# -----------------------------------------------------------------------------
def calc_cpm(pb: PseudobulkCollection) -> PseudobulkCollection:
    """
    Counts-per-million per cluster and sample from a ``fun="sum"`` collection.
    Samples with an empty library, or below the collection's ``min_cells``,
    give NaN.
    """
    if pb.fun != "sum":
        raise ValueError(f"calc_cpm needs summed counts, got fun={pb.fun!r}")

    matrices: dict[str, pd.DataFrame] = {}
    for cl, m in pb.matrices.items():
        lib = m.sum(axis=0).to_numpy(dtype=np.float64)
        keep = pb.n_cells.loc[cl, m.columns].to_numpy() >= max(int(pb.min_cells), 1)
        lib = np.where(keep, lib, 0.0)
        cpm = _safe_divide(m.to_numpy(dtype=np.float64) * 1e6, np.broadcast_to(lib, m.shape))
        matrices[cl] = pd.DataFrame(cpm, index=m.index, columns=m.columns)

    return PseudobulkCollection(
        matrices=matrices,
        experiment_info=pb.experiment_info.copy(),
        n_cells=pb.n_cells.copy(),
        assay=pb.assay,
        fun="cpm",
        min_cells=pb.min_cells,
        by=pb.by,
    )
