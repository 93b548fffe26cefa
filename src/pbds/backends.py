# src/pbds/backends.py
from __future__ import annotations

import logging
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Mapping

import numpy as np
import pandas as pd
from scipy import special, stats

LOGGER = logging.getLogger(__name__)

# Columns every backend must return, indexed by gene
REQUIRED_COLUMNS = ("logFC", "p_val")


class DSBackend(ABC):
    """
    Capability interface for one per-cluster statistical fit.

    ``fit`` receives a (genes x samples) matrix with no missing values, the
    matching (samples x terms) design and name -> weight vectors over the
    design columns. It returns name -> DataFrame indexed by gene with at least
    ``logFC`` and ``p_val``. Implementations keep no state between calls so a
    backend instance can be shipped to worker processes.
    """

    name: ClassVar[str] = "base"

    @abstractmethod
    def fit(
        self,
        matrix: pd.DataFrame,
        design: pd.DataFrame,
        contrasts: Mapping[str, np.ndarray],
        *,
        n_cpus: int = 1,
    ) -> Dict[str, pd.DataFrame]:
        raise NotImplementedError


# -----------------------------------------------------------------------------
# Count GLM (PyDESeq2)
# -----------------------------------------------------------------------------
def _require_pydeseq2():
    try:
        import pydeseq2  # noqa: F401
    except Exception as e:
        raise ImportError(
            "PyDESeq2 is required for method='deseq2'. "
            "Install it (and its deps) in your environment."
        ) from e


@dataclass(frozen=True)
class DESeq2Backend(DSBackend):
    """
    Negative-binomial GLM with shared dispersion trend (DESeq2 via PyDESeq2).

    Input values are rounded to integers; summed raw counts are expected.
    """

    name: ClassVar[str] = "deseq2"

    refit_cooks: bool = True
    cooks_filter: bool = True
    independent_filter: bool = False
    size_factors: str = "ratio"

    def fit(self, matrix, design, contrasts, *, n_cpus: int = 1):
        _require_pydeseq2()
        from pydeseq2.dds import DeseqDataSet
        from pydeseq2.ds import DeseqStats
        from pydeseq2.default_inference import DefaultInference

        samples = pd.Index(design.index.astype(str), name="pb_id")
        counts = pd.DataFrame(
            np.rint(matrix.to_numpy(dtype=np.float64)).T.astype(np.int64),
            index=samples,
            columns=pd.Index(matrix.index.astype(str), name="gene"),
        )
        if (counts.to_numpy() < 0).any():
            raise ValueError("negative values in count matrix; deseq2 needs raw counts")

        design_df = design.copy()
        design_df.index = samples
        design_df = design_df.astype(np.float64)
        metadata = pd.DataFrame({"pb_sample": samples.to_numpy()}, index=samples)

        inference = DefaultInference(n_cpus=int(n_cpus))
        meta: Dict[str, Any] = {"warnings": []}

        with warnings.catch_warnings(record=True) as wrec:
            warnings.simplefilter("always")

            dds = DeseqDataSet(
                counts=counts,
                metadata=metadata,
                design=design_df,
                refit_cooks=bool(self.refit_cooks),
                size_factors_fit_type=str(self.size_factors),
                inference=inference,
                quiet=True,
            )
            dds.deseq2()

            out: Dict[str, pd.DataFrame] = {}
            for name, w in contrasts.items():
                stat = DeseqStats(
                    dds,
                    contrast=np.asarray(w, dtype=np.float64),
                    cooks_filter=bool(self.cooks_filter),
                    independent_filter=bool(self.independent_filter),
                    inference=inference,
                    quiet=True,
                )
                stat.summary()
                res = stat.results_df.reindex(counts.columns)
                out[name] = pd.DataFrame(
                    {
                        "logFC": pd.to_numeric(res["log2FoldChange"], errors="coerce").to_numpy(),
                        "lfcSE": pd.to_numeric(res["lfcSE"], errors="coerce").to_numpy(),
                        "stat": pd.to_numeric(res["stat"], errors="coerce").to_numpy(),
                        "baseMean": pd.to_numeric(res["baseMean"], errors="coerce").to_numpy(),
                        "p_val": pd.to_numeric(res["pvalue"], errors="coerce").to_numpy(),
                    },
                    index=counts.columns,
                )

        for ww in wrec:
            meta["warnings"].append(str(getattr(ww, "message", ww)))
        if meta["warnings"]:
            LOGGER.debug("deseq2 warnings: %s", "; ".join(meta["warnings"][:5]))

        return out


# -----------------------------------------------------------------------------
# Linear model with empirical Bayes moderation
# -----------------------------------------------------------------------------
def _trigamma_inverse(x: float) -> float:
    """Solve trigamma(y) = x by Newton iteration."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x
    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = special.polygamma(1, y)
        dif = tri * (1.0 - tri / x) / special.polygamma(2, y)
        y = y + dif
        if -dif / y < 1e-8:
            break
    return float(y)


def fit_f_dist(s2: np.ndarray, df1: float) -> tuple[float, float]:
    """
    Moment estimates of the scaled-F prior on gene variances.

    Returns (prior_df, prior_var). ``prior_df`` is ``inf`` when the observed
    spread is fully explained by sampling error.
    """
    x = np.asarray(s2, dtype=np.float64)
    x = x[np.isfinite(x)]
    n = x.shape[0]
    if n < 2:
        return 0.0, float(np.nan if n == 0 else x[0])

    m = float(np.median(x))
    if m <= 0:
        m = float(np.mean(x)) if np.mean(x) > 0 else 1.0
    x = np.maximum(x, 1e-5 * m)

    half = df1 / 2.0
    e = np.log(x) - special.digamma(half) + np.log(half)
    emean = float(e.mean())
    evar = float(((e - emean) ** 2).sum() / (n - 1)) - float(special.polygamma(1, half))

    if evar > 0:
        df0 = 2.0 * _trigamma_inverse(evar)
        s20 = float(np.exp(emean + special.digamma(df0 / 2.0) - np.log(df0 / 2.0)))
    else:
        df0 = np.inf
        s20 = float(np.exp(emean))
    return float(df0), s20


def log_cpm(y: np.ndarray, prior_count: float = 2.0) -> np.ndarray:
    """log2 counts-per-million with a library-size scaled prior count (edgeR style)."""
    y = np.asarray(y, dtype=np.float64)
    lib = y.sum(axis=0)
    if (lib <= 0).any():
        raise ValueError("empty library in log-CPM transform")
    pc = prior_count * lib / lib.mean()
    return np.log2((y + pc) / (lib + 2.0 * pc) * 1e6)


@dataclass(frozen=True)
class LimmaBackend(DSBackend):
    """
    Gene-wise OLS with empirical Bayes variance moderation (limma-style
    moderated t). Suited to continuous values such as mean log-expression;
    set ``log_cpm=True`` to feed summed counts.
    """

    name: ClassVar[str] = "limma"

    log_cpm: bool = False
    prior_count: float = 2.0

    def fit(self, matrix, design, contrasts, *, n_cpus: int = 1):
        genes = pd.Index(matrix.index.astype(str), name="gene")
        Y = matrix.to_numpy(dtype=np.float64)
        if self.log_cpm:
            Y = log_cpm(Y, self.prior_count)

        X = design.to_numpy(dtype=np.float64)
        n, p = X.shape
        if np.linalg.matrix_rank(X) < p:
            raise np.linalg.LinAlgError(
                f"design is rank deficient ({n} samples x {p} terms); a coefficient is not estimable"
            )
        df_res = n - p
        if df_res < 1:
            raise ValueError(f"no residual degrees of freedom ({n} samples, {p} terms)")

        xtx_inv = np.linalg.inv(X.T @ X)
        B = Y @ X @ xtx_inv  # genes x terms
        resid = Y - B @ X.T
        s2 = (resid ** 2).sum(axis=1) / df_res

        df0, s20 = fit_f_dist(s2, df_res)
        if np.isinf(df0):
            s2_post = np.full_like(s2, s20)
        elif df0 > 0:
            s2_post = (df0 * s20 + df_res * s2) / (df0 + df_res)
        else:
            s2_post = s2
        df_total = min(df_res + df0, df_res * Y.shape[0])

        ave = Y.mean(axis=1)
        out: Dict[str, pd.DataFrame] = {}
        for name, w in contrasts.items():
            w = np.asarray(w, dtype=np.float64)
            est = B @ w
            unscaled = float(np.sqrt(w @ xtx_inv @ w))
            with np.errstate(divide="ignore", invalid="ignore"):
                t = est / (unscaled * np.sqrt(s2_post))
            pv = 2.0 * stats.t.sf(np.abs(t), df_total)
            out[name] = pd.DataFrame(
                {"logFC": est, "AveExpr": ave, "t": t, "p_val": pv},
                index=genes,
            )

        LOGGER.debug("limma fit: %d genes, df_residual=%d, df_prior=%.2f", Y.shape[0], df_res, df0)
        return out


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------
BACKENDS: Dict[str, type] = {
    DESeq2Backend.name: DESeq2Backend,
    LimmaBackend.name: LimmaBackend,
}


def get_backend(name: str, **kwargs) -> DSBackend:
    key = str(name).lower().strip()
    if key not in BACKENDS:
        raise ValueError(f"Unknown DS method {name!r}. Available: {sorted(BACKENDS)}")
    return BACKENDS[key](**kwargs)
