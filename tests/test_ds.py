# tests/test_ds.py

import os

import numpy as np
import pandas as pd
import pytest

from pbds.backends import DSBackend, LimmaBackend, get_backend
from pbds.design import ContrastSpec, model_matrix
from pbds.ds_utils import _compute_cluster_parallelism, pb_ds
from pbds.errors import BackendFailure, DesignSampleMismatch, EmptyCluster, RunCancelled
from pbds.fdr import adjust_pvalues
from pbds.pb_utils import PseudobulkCollection, aggregate_data

from conftest import prepared, synthetic_cells


SAMPLES = ["s1", "s2", "s3", "s4"]
GENES = ["g0", "g1", "g2", "g3"]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
class RecordingBackend(DSBackend):
    """Returns fixed statistics and remembers what it was given."""

    name = "recording"

    def __init__(self, fail_calls=()):
        self.calls = []
        self.fail_calls = set(fail_calls)

    def fit(self, matrix, design, contrasts, *, n_cpus=1):
        self.calls.append({"genes": list(matrix.index), "samples": list(matrix.columns), "design": design})
        if len(self.calls) - 1 in self.fail_calls:
            raise RuntimeError("model did not converge")
        n = matrix.shape[0]
        out = {}
        for name, w in contrasts.items():
            out[name] = pd.DataFrame(
                {
                    "logFC": matrix.to_numpy() @ np.ones(matrix.shape[1]) * float(np.sum(w)),
                    "p_val": np.linspace(0.001, 0.5, n),
                    "stat": np.arange(n, dtype=float),
                },
                index=matrix.index,
            )
        return out


def collection(values, n_cells=20, min_cells=0):
    """PseudobulkCollection over s1..s4 (ctrl, ctrl, stim, stim) from cluster -> (genes x samples) rows."""
    ei = pd.DataFrame(
        {
            "sample_id": SAMPLES,
            "group_id": pd.Categorical(["ctrl", "ctrl", "stim", "stim"]),
            "n_cells": [40, 40, 40, 40],
        },
        index=pd.Index(SAMPLES, name="sample_id"),
    )
    matrices = {
        cl: pd.DataFrame(np.asarray(v, dtype=float), index=GENES[: len(v)], columns=pd.Index(SAMPLES))
        for cl, v in values.items()
    }
    if not isinstance(n_cells, pd.DataFrame):
        n_cells = pd.DataFrame(n_cells, index=list(values), columns=SAMPLES)
    return PseudobulkCollection(
        matrices=matrices, experiment_info=ei, n_cells=n_cells, assay="counts", min_cells=min_cells
    )


GOOD = [[10, 12, 30, 33], [50, 40, 45, 60], [20, 25, 22, 18], [11, 14, 19, 12]]


# -----------------------------------------------------------------------------
# Preconditions
# -----------------------------------------------------------------------------
def test_design_row_mismatch_raises_before_any_fit():
    pb = collection({"A": GOOD})
    backend = RecordingBackend()
    design = np.ones((3, 2))

    with pytest.raises(DesignSampleMismatch):
        pb_ds(pb, design, backend=backend)
    assert backend.calls == []


def test_design_in_other_sample_order_raises():
    pb = collection({"A": GOOD})
    design = model_matrix(pb.experiment_info).iloc[::-1]
    with pytest.raises(DesignSampleMismatch):
        pb_ds(pb, design, backend=RecordingBackend())


def test_contrast_length_mismatch_raises():
    pb = collection({"A": GOOD})
    backend = RecordingBackend()
    with pytest.raises(ValueError):
        pb_ds(pb, contrast={"c": [0, 1, 0]}, backend=backend)
    assert backend.calls == []


def test_unlabelled_design_is_accepted():
    pb = collection({"A": GOOD})
    design = np.column_stack([np.ones(4), [0, 0, 1, 1]])
    ds = pb_ds(pb, design, backend=RecordingBackend(), min_count=0)
    assert ds.contrast_ids == ["x1"]
    assert ds.succeeded == ["A"]


def test_unknown_filter_mode():
    with pytest.raises(ValueError):
        pb_ds(collection({"A": GOOD}), backend=RecordingBackend(), filter="cells")


# -----------------------------------------------------------------------------
# Per-cluster filtering
# -----------------------------------------------------------------------------
def test_degenerate_genes_always_dropped():
    values = [[0, 0, 0, 0], [5, 5, 5, 5], [1, 0, 2, 1], [10, 12, 30, 33]]
    backend = RecordingBackend()

    ds = pb_ds(collection({"A": values}), backend=backend, filter="none")

    assert backend.calls[0]["genes"] == ["g2", "g3"]
    tbl = ds.table("group_idstim", "A")
    assert tbl["gene"].tolist() == ["g2", "g3"]


def test_min_count_filters_low_genes():
    values = [[0, 0, 0, 0], [5, 5, 5, 5], [1, 0, 2, 1], [10, 12, 30, 33]]
    backend = RecordingBackend()

    pb_ds(collection({"A": values}), backend=backend, filter="genes", min_count=10)

    assert backend.calls[0]["genes"] == ["g3"]


def test_min_cells_drops_samples_and_design_rows():
    n_cells = pd.DataFrame([[20, 5, 20, 20]], index=["A"], columns=SAMPLES)
    values = [[10, 12, 30, 33], [11, 14, 19, 12], [20, 25, 22, 18], [3, 9, 1, 7]]

    backend = RecordingBackend()
    ds = pb_ds(collection({"A": values}, n_cells=n_cells), backend=backend, filter="samples", min_cells=10)
    assert backend.calls[0]["samples"] == ["s1", "s3", "s4"]
    assert list(backend.calls[0]["design"].index) == ["s1", "s3", "s4"]
    assert ds.summary.loc[0, "n_samples"] == 3

    backend = RecordingBackend()
    pb_ds(collection({"A": values}, n_cells=n_cells), backend=backend, filter="none", min_cells=10)
    assert backend.calls[0]["samples"] == SAMPLES


def test_missing_samples_of_collection_are_always_removed():
    # zero cells -> sentinel column, never handed to the backend
    n_cells = pd.DataFrame([[20, 0, 20, 20]], index=["A"], columns=SAMPLES)
    values = [[10, 0, 30, 33], [11, 0, 19, 12], [20, 0, 22, 18], [3, 0, 1, 7]]
    backend = RecordingBackend()

    pb_ds(collection({"A": values}, n_cells=n_cells), backend=backend, filter="none")

    assert backend.calls[0]["samples"] == ["s1", "s3", "s4"]


def test_empty_cluster_is_recorded_and_others_still_run():
    adata = synthetic_cells(n_per=12)
    obs = adata.obs
    rank = obs.groupby(["cluster", "sample"]).cumcount()
    adata = prepared(adata[~((obs["cluster"] == "B") & (rank >= 2)).to_numpy()].copy())
    pb = aggregate_data(adata, assay="counts")

    ds = pb_ds(pb, backend=RecordingBackend(), min_cells=10, filter="both", min_count=0)

    assert ds.succeeded == ["A"]
    assert isinstance(ds.errors["B"], EmptyCluster)
    assert ds.errors["B"].cluster_id == "B"
    status = ds.summary.set_index("cluster_id")["status"]
    assert status["B"] == "skipped"
    assert status["A"] == "ok"
    assert list(ds.tables["group_idstim"]) == ["A"]


def test_backend_failure_is_recorded():
    pb = collection({"A": GOOD, "B": GOOD})
    ds = pb_ds(pb, backend=RecordingBackend(fail_calls=[0]), min_count=0)

    assert ds.succeeded == ["B"]
    err = ds.errors["A"]
    assert isinstance(err, BackendFailure)
    assert "did not converge" in err.reason
    assert isinstance(err.__cause__, RuntimeError)
    assert ds.failed == {"A": err.reason}
    assert ds.summary.set_index("cluster_id").loc["A", "status"] == "failed"


# -----------------------------------------------------------------------------
# Result tables
# -----------------------------------------------------------------------------
def test_tables_layout_and_per_cluster_adjustment():
    pb = collection({"A": GOOD, "B": GOOD})
    spec = ContrastSpec(contrasts={"stim_vs_ctrl": [0, 1], "both": [1, 1]})

    ds = pb_ds(pb, contrast=spec, backend=RecordingBackend(), min_count=0)

    assert ds.contrast_ids == ["stim_vs_ctrl", "both"]
    assert list(ds.tables) == ["stim_vs_ctrl", "both"]
    tbl = ds.table("stim_vs_ctrl", "B")
    assert list(tbl.columns[:5]) == ["gene", "cluster_id", "logFC", "p_val", "p_adj"]
    assert tbl["contrast_id"].unique().tolist() == ["stim_vs_ctrl"]
    assert "stat" in tbl.columns
    assert tbl["gene"].tolist() == GENES
    np.testing.assert_allclose(tbl["p_adj"].to_numpy(), adjust_pvalues(tbl["p_val"].to_numpy()))


def test_coef_list_selects_columns():
    pb = collection({"A": GOOD})
    ds = pb_ds(pb, contrast=["(Intercept)", "group_idstim"], backend=RecordingBackend(), min_count=0)
    assert ds.mode == "coef"
    assert ds.contrast_ids == ["(Intercept)", "group_idstim"]


def test_should_stop_cancels_run():
    pb = collection({"A": GOOD, "B": GOOD})
    backend = RecordingBackend()
    with pytest.raises(RunCancelled):
        pb_ds(pb, backend=backend, min_count=0, should_stop=lambda: True)
    assert backend.calls == []


def test_compute_cluster_parallelism():
    assert _compute_cluster_parallelism(n_clusters=8, total_cpus=4) == (4, 1)
    assert _compute_cluster_parallelism(n_clusters=2, total_cpus=7) == (2, 3)
    assert _compute_cluster_parallelism(n_clusters=0, total_cpus=0) == (1, 1)


# -----------------------------------------------------------------------------
# Parallel execution
# -----------------------------------------------------------------------------
class ExitingBackend(DSBackend):
    """Kills the worker process it runs in."""

    name = "exiting"

    def fit(self, matrix, design, contrasts, *, n_cpus=1):
        os._exit(1)


def three_cluster_collection():
    samples = {"s1": "ctrl", "s2": "ctrl", "s3": "ctrl", "s4": "stim", "s5": "stim", "s6": "stim"}
    adata = prepared(
        synthetic_cells(
            n_per=12, clusters=("A", "B", "C"), samples=samples, n_genes=8, effect={("A", 0): 4.0}, seed=2
        )
    )
    return aggregate_data(adata, assay="counts", fun="mean")


def test_parallel_run_matches_serial():
    pb = three_cluster_collection()

    serial = pb_ds(pb, method="limma", filter="none", n_jobs=1)
    parallel = pb_ds(pb, method="limma", filter="none", n_jobs=2)

    assert parallel.succeeded == serial.succeeded == ["A", "B", "C"]
    for cl in ("A", "B", "C"):
        pd.testing.assert_frame_equal(
            parallel.table("group_idstim", cl), serial.table("group_idstim", cl)
        )


def test_parallel_should_stop_cancels_after_first_cluster():
    pb = three_cluster_collection()
    with pytest.raises(RunCancelled, match="after 1/3"):
        pb_ds(pb, method="limma", filter="none", n_jobs=2, should_stop=lambda: True)


def test_parallel_worker_death_is_recorded_as_failure():
    pb = three_cluster_collection()

    ds = pb_ds(pb, backend=ExitingBackend(), filter="none", n_jobs=2)

    assert ds.succeeded == []
    assert set(ds.errors) == {"A", "B", "C"}
    for err in ds.errors.values():
        assert isinstance(err, BackendFailure)
        assert err.__cause__ is not None
    assert set(ds.summary["status"]) == {"failed"}


def test_round_tripped_collection_tests_like_the_original():
    pb = three_cluster_collection()
    back = PseudobulkCollection.from_anndata(pb.to_anndata())

    direct = pb_ds(pb, method="limma", filter="none")
    again = pb_ds(back, method="limma", filter="none")

    assert again.succeeded == ["A", "B", "C"]
    pd.testing.assert_frame_equal(again.table("group_idstim", "A"), direct.table("group_idstim", "A"))


# -----------------------------------------------------------------------------
# Backends
# -----------------------------------------------------------------------------
def test_get_backend():
    assert isinstance(get_backend("LIMMA"), LimmaBackend)
    with pytest.raises(ValueError):
        get_backend("edger")


def test_limma_recovers_planted_effect():
    samples = {"s1": "ctrl", "s2": "ctrl", "s3": "ctrl", "s4": "stim", "s5": "stim", "s6": "stim"}
    adata = prepared(synthetic_cells(n_per=30, samples=samples, n_genes=10, effect={("A", 0): 4.0}, seed=7))
    pb = aggregate_data(adata, assay="counts", fun="mean")

    ds = pb_ds(pb, method="limma", filter="none")

    a = ds.table("group_idstim", "A").set_index("gene")
    assert a["p_val"].idxmin() == "g0"
    assert a.loc["g0", "p_adj"] < 0.01
    assert 10 < a.loc["g0", "logFC"] < 20
    assert (a.drop(index="g0")["logFC"].abs() < 3).all()
    assert {"AveExpr", "t"} <= set(a.columns)

    b = ds.table("group_idstim", "B")
    # no planted effect in B
    assert (b["p_adj"] > 1e-4).all()


def test_limma_needs_residual_df():
    m = pd.DataFrame([[1.0, 2.0], [3.0, 5.0]], index=["g0", "g1"], columns=["s1", "s2"])
    d = pd.DataFrame({"(Intercept)": [1.0, 1.0], "g": [0.0, 1.0]}, index=["s1", "s2"])
    with pytest.raises(ValueError):
        LimmaBackend().fit(m, d, {"g": np.array([0.0, 1.0])})


def test_deseq2_smoke():
    pytest.importorskip("pydeseq2")

    samples = {"s1": "ctrl", "s2": "ctrl", "s3": "ctrl", "s4": "stim", "s5": "stim", "s6": "stim"}
    adata = prepared(
        synthetic_cells(n_per=20, samples=samples, n_genes=40, lam=3.0, effect={("A", 0): 5.0}, seed=3)
    )
    pb = aggregate_data(adata, assay="counts", fun="sum")

    ds = pb_ds(pb, method="deseq2", filter="both", min_count=10)

    assert ds.method == "deseq2"
    assert ds.succeeded == ["A", "B"]
    for cl in ("A", "B"):
        tbl = ds.table("group_idstim", cl)
        assert tbl.shape[0] == ds.summary.set_index("cluster_id").loc[cl, "n_genes"]
        assert {"lfcSE", "baseMean"} <= set(tbl.columns)
    a = ds.table("group_idstim", "A").set_index("gene")
    assert a.loc["g0", "logFC"] > 1
