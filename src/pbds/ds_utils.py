# src/pbds/ds_utils.py
from __future__ import annotations

import logging
import multiprocessing as mp
import time
from concurrent.futures import ProcessPoolExecutor, TimeoutError, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Union

import numpy as np
import pandas as pd

from .backends import REQUIRED_COLUMNS, DSBackend, get_backend
from .cell_table import CLUSTER_KEY, GROUP_KEY
from .design import ContrastSpec, model_matrix
from .errors import (
    BackendFailure,
    ClusterError,
    DesignSampleMismatch,
    EmptyCluster,
    RunCancelled,
)
from .fdr import adjust_pvalues
from .pb_utils import PseudobulkCollection

LOGGER = logging.getLogger(__name__)

FilterMode = Literal["none", "samples", "genes", "both"]
FILTER_MODES = ("none", "samples", "genes", "both")

# leading columns of every per-cluster result table
RESULT_COLUMNS = ["gene", CLUSTER_KEY, "logFC", "p_val", "p_adj"]
CONTRAST_KEY = "contrast_id"


@dataclass
class DSResult:
    """
    Output of ``pb_ds``.

    tables:  contrast id -> cluster id -> result table (successful clusters only)
    summary: one row per cluster with status ('ok' | 'skipped' | 'failed') and reason
    errors:  cluster id -> EmptyCluster / BackendFailure for clusters without results
    """

    tables: Dict[str, Dict[str, pd.DataFrame]]
    summary: pd.DataFrame
    errors: Dict[str, ClusterError]
    design: pd.DataFrame
    contrasts: Dict[str, np.ndarray]
    method: str
    mode: str
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def contrast_ids(self) -> list[str]:
        return list(self.contrasts.keys())

    @property
    def succeeded(self) -> list[str]:
        return self.summary.loc[self.summary["status"] == "ok", CLUSTER_KEY].astype(str).tolist()

    @property
    def failed(self) -> Dict[str, str]:
        return {cl: err.reason for cl, err in self.errors.items()}

    def table(self, contrast: str, cluster: str) -> pd.DataFrame:
        return self.tables[str(contrast)][str(cluster)]


# -----------------------------------------------------------------------------
# Precondition checks
# -----------------------------------------------------------------------------
def _check_design(pb: PseudobulkCollection, design: Union[pd.DataFrame, np.ndarray]) -> pd.DataFrame:
    """
    Return the design as a DataFrame indexed by the pseudo-bulk columns.

    Unlabelled designs (ndarray or RangeIndex) are only checked for row
    count; labelled ones must list the samples in the pseudo-bulk order.
    """
    samples = pd.Index(pb.columns.astype(str))

    if isinstance(design, pd.DataFrame):
        d = design.copy()
    else:
        arr = np.asarray(design, dtype=np.float64)
        if arr.ndim != 2:
            raise DesignSampleMismatch(f"design must be 2-dimensional, got shape {arr.shape}")
        d = pd.DataFrame(arr, columns=[f"x{j}" for j in range(arr.shape[1])])

    if d.shape[0] != len(samples):
        raise DesignSampleMismatch(
            f"design has {d.shape[0]} rows but the pseudo-bulk matrices have {len(samples)} sample columns"
        )

    if not isinstance(d.index, pd.RangeIndex):
        labels = pd.Index(d.index.astype(str))
        if not labels.equals(samples):
            if set(labels) == set(samples):
                raise DesignSampleMismatch("design rows list the samples in a different order than the pseudo-bulk columns")
            raise DesignSampleMismatch(
                f"design rows {list(labels[:5])} do not match pseudo-bulk samples {list(samples[:5])}"
            )

    try:
        d = d.astype(np.float64)
    except (TypeError, ValueError) as e:
        raise ValueError(f"design matrix must be numeric: {e}") from e
    if d.shape[1] == 0:
        raise ValueError("design matrix has no columns")

    d.index = samples
    d.columns = [str(c) for c in d.columns]
    return d


def _as_contrast_spec(contrast) -> ContrastSpec:
    if contrast is None:
        return ContrastSpec()
    if isinstance(contrast, ContrastSpec):
        return contrast
    if isinstance(contrast, (pd.DataFrame, Mapping)):
        return ContrastSpec(contrasts=contrast)
    return ContrastSpec(coefs=list(contrast))


def _compute_cluster_parallelism(
    *,
    n_clusters: int,
    total_cpus: int,
) -> tuple[int, int]:
    """
    Decide (n_jobs, n_cpus_per_job) for cluster-wise fits.

    Rules:
      - If total_cpus <= n_clusters:
          n_jobs = total_cpus
          n_cpus = 1
      - Else:
          n_jobs = n_clusters
          n_cpus = 1 + floor((total_cpus - n_clusters) / n_clusters)
    """
    total_cpus = int(max(1, total_cpus))
    n_clusters = int(max(1, n_clusters))

    if total_cpus <= n_clusters:
        return total_cpus, 1

    extra = total_cpus - n_clusters
    n_cpus = 1 + (extra // n_clusters)
    return n_clusters, n_cpus


# -----------------------------------------------------------------------------
# Per-cluster filtering
# -----------------------------------------------------------------------------
def _filter_cluster(
    pb: PseudobulkCollection,
    cluster: str,
    design: pd.DataFrame,
    *,
    min_cells: int,
    filter: str,
    min_count: float,
) -> tuple[pd.DataFrame, pd.DataFrame, Dict[str, Any]]:
    """
    Drop missing samples and untestable genes of one cluster.

    Samples below the collection's own min_cells (or with zero cells) always
    go, since their values are the missing sentinel; ``min_cells`` applies on
    top when filter is 'samples' or 'both'. Genes with any missing value or
    a constant profile always go; ``min_count`` applies on top when filter
    is 'genes' or 'both'.
    """
    m = pb.matrices[cluster]
    n = pb.n_cells.loc[cluster, m.columns].to_numpy()

    floor = max(int(pb.min_cells), 1)
    if filter in ("samples", "both"):
        floor = max(floor, int(min_cells))
    keep_s = n >= floor

    info: Dict[str, Any] = {
        "n_samples": int(keep_s.sum()),
        "n_samples_dropped": int((~keep_s).sum()),
    }
    if not keep_s.any():
        raise EmptyCluster(cluster, f"no sample with >= {floor} cells")

    y = m.loc[:, keep_s]
    d = design.loc[keep_s]

    vals = y.to_numpy(dtype=np.float64)
    finite = np.isfinite(vals)
    keep_g = finite.all(axis=1)
    # constant profiles (all-zero included) carry no information for any contrast
    keep_g &= np.ptp(np.where(finite, vals, 0.0), axis=1) > 0
    if filter in ("genes", "both"):
        keep_g &= np.nansum(vals, axis=1) >= float(min_count)

    info["n_genes"] = int(keep_g.sum())
    info["n_genes_dropped"] = int((~keep_g).sum())
    if not keep_g.any():
        raise EmptyCluster(cluster, "no genes left after filtering")

    return y.loc[keep_g], d, info


# -----------------------------------------------------------------------------
# Worker
# -----------------------------------------------------------------------------
def _ds_cluster_worker(payload: dict) -> tuple[str, Dict[str, pd.DataFrame], dict]:
    """
    Worker: run one backend fit for a single cluster.
    Returns (cluster_id, tables_by_contrast, summary_meta_updates)
    """
    cl = payload["cluster"]
    y: pd.DataFrame = payload["matrix"]
    d: pd.DataFrame = payload["design"]
    contrasts: Dict[str, np.ndarray] = payload["contrasts"]
    backend: DSBackend = payload["backend"]
    fdr_method = str(payload["fdr_method"])
    alpha = float(payload["alpha"])

    try:
        # a design that lost whole levels with the dropped samples
        if np.linalg.matrix_rank(d.to_numpy()) < d.shape[1]:
            raise np.linalg.LinAlgError(
                f"design is rank deficient with the {d.shape[0]} remaining samples"
            )

        fits = backend.fit(y, d, contrasts, n_cpus=int(payload["n_cpus"]))

        genes = y.index.astype(str)
        tables: Dict[str, pd.DataFrame] = {}
        n_sig = 0
        for name in contrasts:
            if name not in fits:
                raise RuntimeError(f"backend returned no result for contrast {name!r}")
            res = fits[name]
            missing = [c for c in REQUIRED_COLUMNS if c not in res.columns]
            if missing:
                raise RuntimeError(f"backend result lacks columns {missing}")
            res = res.reindex(genes)

            tbl = pd.DataFrame(
                {
                    "gene": genes.to_numpy(),
                    CLUSTER_KEY: cl,
                    "logFC": pd.to_numeric(res["logFC"], errors="coerce").to_numpy(),
                    "p_val": pd.to_numeric(res["p_val"], errors="coerce").to_numpy(),
                }
            )
            tbl["p_adj"] = adjust_pvalues(tbl["p_val"].to_numpy(), method=fdr_method)
            for c in res.columns:
                if c not in REQUIRED_COLUMNS and c not in tbl.columns:
                    tbl[c] = res[c].to_numpy()
            tbl[CONTRAST_KEY] = name
            tables[name] = tbl
            n_sig = max(n_sig, int((tbl["p_adj"] < alpha).sum()))

        return cl, tables, {"status": "ok", "n_sig": n_sig}

    except Exception as e:
        return cl, {}, {"status": "failed", "reason": f"{type(e).__name__}: {e}", "exception": e}


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------
def pb_ds(
    pb: PseudobulkCollection,
    design: Optional[Union[pd.DataFrame, np.ndarray]] = None,
    contrast: Optional[Union[ContrastSpec, Mapping, pd.DataFrame, list]] = None,
    *,
    method: str = "deseq2",
    backend: Optional[DSBackend] = None,
    min_cells: int = 10,
    filter: FilterMode = "both",
    min_count: float = 10,
    fdr_method: str = "fdr_bh",
    alpha: float = 0.05,
    n_jobs: int = 1,
    heartbeat_s: float = 60.0,
    should_stop: Optional[Callable[[], bool]] = None,
) -> DSResult:
    """
    Test every cluster of ``pb`` with one design and one contrast specification.

    Each cluster is filtered and fitted on its own; p-values are adjusted
    within each (cluster, contrast). Clusters that end up empty or whose fit
    raises are recorded in ``summary``/``errors`` and do not stop the run.

    design:   samples x terms (DataFrame or ndarray); default ~group_id
    contrast: ContrastSpec, name -> weights mapping, terms x contrasts
              DataFrame, or a list of coefficients; default = last design column
    """
    if filter not in FILTER_MODES:
        raise ValueError(f"filter must be one of {FILTER_MODES}, got {filter!r}")

    if design is None:
        if list(pb.columns.astype(str)) != list(pb.samples):
            raise DesignSampleMismatch("a default design needs sample_id columns; pass design explicitly")
        design = model_matrix(pb.experiment_info, GROUP_KEY)
    design_df = _check_design(pb, design)

    spec = _as_contrast_spec(contrast)
    weights = spec.resolve(design_df.columns)
    if not weights:
        raise ValueError("nothing to test: empty contrast specification")

    if backend is None:
        backend = get_backend(method)
    method_name = getattr(backend, "name", str(method))

    clusters = [str(c) for c in pb.clusters]
    n_jobs_eff, n_cpus_eff = _compute_cluster_parallelism(n_clusters=len(clusters), total_cpus=int(n_jobs))

    LOGGER.info(
        "Pseudobulk DS: method=%s, mode=%s, contrasts=%s, clusters=%d, design=%dx%d",
        method_name,
        spec.mode,
        list(weights),
        len(clusters),
        design_df.shape[0],
        design_df.shape[1],
    )
    LOGGER.info(
        "Pseudobulk DS parallelism: n_clusters=%d, total_cpus=%d -> n_jobs=%d, n_cpus_per_job=%d",
        len(clusters),
        int(n_jobs),
        int(n_jobs_eff),
        int(n_cpus_eff),
    )

    def _stop_requested() -> bool:
        return bool(should_stop is not None and should_stop())

    summary_rows: Dict[str, dict] = {}
    errors: Dict[str, ClusterError] = {}
    results: Dict[str, Dict[str, pd.DataFrame]] = {}

    # Per-cluster payloads are built in the parent process (small dense matrices)
    payloads: list[dict] = []
    for cl in clusters:
        row = {CLUSTER_KEY: cl, "status": "queued", "reason": ""}
        summary_rows[cl] = row
        try:
            y, d, info = _filter_cluster(
                pb, cl, design_df, min_cells=min_cells, filter=filter, min_count=min_count
            )
        except EmptyCluster as e:
            row.update(status=e.status, reason=e.reason)
            errors[cl] = e
            LOGGER.warning("Pseudobulk DS: skipping cluster=%s (%s)", cl, e.reason)
            continue
        row.update(info)
        payloads.append(
            {
                "cluster": cl,
                "matrix": y.copy(),
                "design": d.copy(),
                "contrasts": weights,
                "backend": backend,
                "n_cpus": int(n_cpus_eff),
                "fdr_method": str(fdr_method),
                "alpha": float(alpha),
            }
        )

    def _record(cl: str, tables: Dict[str, pd.DataFrame], meta_upd: dict, dt: float) -> None:
        row = summary_rows[cl]
        row["runtime_s"] = float(dt)
        if meta_upd.get("status") == "ok":
            row.update(status="ok", n_sig=meta_upd.get("n_sig", 0))
            results[cl] = tables
        else:
            err = BackendFailure(cl, meta_upd.get("reason", "unknown error"))
            err.__cause__ = meta_upd.get("exception")
            row.update(status=err.status, reason=err.reason)
            errors[cl] = err
            LOGGER.warning("Pseudobulk DS: cluster=%s failed (%s)", cl, err.reason)

    # --- execute: serial or parallel ---
    t0 = time.perf_counter()
    total = int(len(payloads))
    if total == 0:
        LOGGER.warning("Pseudobulk DS: no testable clusters (all skipped).")
    elif int(n_jobs) <= 1 or total <= 1:
        for i, p in enumerate(payloads, start=1):
            if _stop_requested():
                raise RunCancelled(f"cancelled after {i - 1}/{total} clusters")
            cl = str(p["cluster"])
            LOGGER.info(
                "PB DS [%d/%d] start cluster=%s (samples=%d, genes=%d)",
                i, total, cl, p["design"].shape[0], p["matrix"].shape[0],
            )
            t_cl0 = time.perf_counter()
            cl2, tables, meta_upd = _ds_cluster_worker(p)
            dt = time.perf_counter() - t_cl0
            _record(cl2, tables, meta_upd, dt)

            elapsed = time.perf_counter() - t0
            eta_s = (elapsed / max(1, i)) * (total - i)
            LOGGER.info(
                "PB DS [%d/%d] done  cluster=%s status=%s n_sig=%s time=%.1fs elapsed=%.1fs eta=%.1fs",
                i, total, cl2, meta_upd.get("status", "unknown"), meta_upd.get("n_sig", "NA"),
                dt, elapsed, eta_s,
            )
    else:
        ctx = mp.get_context("spawn")
        LOGGER.info(
            "Pseudobulk DS: running in parallel (payloads=%d, max_workers=%d, heartbeat=%.0fs).",
            total, int(n_jobs_eff), float(heartbeat_s),
        )
        submit_ts: Dict[str, float] = {}
        with ProcessPoolExecutor(max_workers=int(n_jobs_eff), mp_context=ctx) as ex:
            futs = {}
            for p in payloads:
                cl = str(p["cluster"])
                submit_ts[cl] = time.perf_counter()
                futs[ex.submit(_ds_cluster_worker, p)] = cl

            pending = set(futs.keys())
            done = 0
            while pending:
                try:
                    for fut in as_completed(pending, timeout=float(heartbeat_s)):
                        pending.remove(fut)
                        cl = futs[fut]
                        dt = time.perf_counter() - submit_ts.get(cl, t0)
                        try:
                            cl2, tables, meta_upd = fut.result()
                        except Exception as e:
                            # worker process died (e.g. OOM); the cluster is lost, not the run
                            cl2, tables, meta_upd = cl, {}, {"status": "failed", "reason": f"{type(e).__name__}: {e}", "exception": e}
                        _record(cl2, tables, meta_upd, dt)
                        done += 1
                        elapsed = time.perf_counter() - t0
                        LOGGER.info(
                            "PB DS [%d/%d] done  cluster=%s status=%s n_sig=%s time=%.1fs elapsed=%.1fs",
                            done, total, cl2, meta_upd.get("status", "unknown"), meta_upd.get("n_sig", "NA"),
                            dt, elapsed,
                        )
                        if _stop_requested():
                            for f in pending:
                                f.cancel()
                            raise RunCancelled(f"cancelled after {done}/{total} clusters")
                except TimeoutError:
                    now = time.perf_counter()
                    pending_cls = sorted((futs[f] for f in pending), key=lambda c: submit_ts.get(c, now))
                    longest = [f"{c}:{now - submit_ts.get(c, now):.0f}s" for c in pending_cls[:3]]
                    LOGGER.info(
                        "PB DS heartbeat: done=%d/%d pending=%d elapsed=%.1fs longest=%s",
                        done, total, len(pending), now - t0, ", ".join(longest) if longest else "NA",
                    )
                    if _stop_requested():
                        for f in pending:
                            f.cancel()
                        raise RunCancelled(f"cancelled after {done}/{total} clusters")

    # contrast-major, cluster order as in the collection
    tables_out: Dict[str, Dict[str, pd.DataFrame]] = {name: {} for name in weights}
    for cl in clusters:
        if cl not in results:
            continue
        for name in weights:
            tables_out[name][cl] = results[cl][name]

    summary = pd.DataFrame([summary_rows[cl] for cl in clusters])
    for col in ("n_samples", "n_genes", "n_sig", "runtime_s"):
        if col not in summary.columns:
            summary[col] = np.nan

    n_ok = int((summary["status"] == "ok").sum()) if not summary.empty else 0
    LOGGER.info(
        "Pseudobulk DS finished: %d ok, %d skipped, %d failed (%.1fs)",
        n_ok,
        int((summary["status"] == "skipped").sum()) if not summary.empty else 0,
        int((summary["status"] == "failed").sum()) if not summary.empty else 0,
        time.perf_counter() - t0,
    )

    return DSResult(
        tables=tables_out,
        summary=summary,
        errors=errors,
        design=design_df,
        contrasts=weights,
        method=method_name,
        mode=spec.mode,
        params={
            "min_cells": int(min_cells),
            "filter": str(filter),
            "min_count": float(min_count),
            "fdr_method": str(fdr_method),
            "alpha": float(alpha),
            "n_jobs": int(n_jobs_eff),
            "n_cpus_per_fit": int(n_cpus_eff),
        },
    )
