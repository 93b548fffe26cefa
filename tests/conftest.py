# tests/conftest.py

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from pbds.cell_table import prepare_cell_table


DEFAULT_SAMPLES = {"s1": "ctrl", "s2": "ctrl", "s3": "stim", "s4": "stim"}


# -----------------------------------------------------------------------------
# Synthetic cell table
# -----------------------------------------------------------------------------
def synthetic_cells(
    n_per=5,
    clusters=("A", "B"),
    samples=None,
    n_genes=6,
    lam=5.0,
    effect=None,
    skip=(),
    seed=0,
):
    """
    Poisson counts for every (cluster, sample) combination.

    effect: {(cluster, gene_index): factor} multiplies the rate in stim samples
    skip:   (cluster, sample) pairs that get no cells
    obs keys are 'cluster', 'sample', 'condition' (unprepared)
    """
    samples = dict(samples or DEFAULT_SAMPLES)
    effect = dict(effect or {})
    skip = set(skip)
    rng = np.random.default_rng(seed)

    blocks, obs_rows = [], []
    for cl in clusters:
        for s, grp in samples.items():
            if (cl, s) in skip:
                continue
            rate = np.full(n_genes, float(lam))
            if grp == "stim":
                for (ecl, g), f in effect.items():
                    if ecl == cl:
                        rate[g] *= f
            blocks.append(rng.poisson(rate, size=(n_per, n_genes)))
            obs_rows.extend({"cluster": cl, "sample": s, "condition": grp} for _ in range(n_per))

    counts = np.vstack(blocks).astype(np.float64)
    obs = pd.DataFrame(obs_rows)
    obs.index = [f"cell{i}" for i in range(obs.shape[0])]
    var = pd.DataFrame(index=[f"g{j}" for j in range(n_genes)])

    adata = ad.AnnData(X=sp.csr_matrix(np.log1p(counts)), obs=obs, var=var)
    adata.layers["counts"] = sp.csr_matrix(counts)
    return adata


def prepared(adata, **kwargs):
    return prepare_cell_table(
        adata, cluster_key="cluster", sample_key="sample", group_key="condition", **kwargs
    )


@pytest.fixture
def cell_table():
    return prepared(synthetic_cells())


@pytest.fixture
def tiny_table():
    """
    2 clusters, 2 samples (s1 ctrl, s2 stim), genes g1 g2.

        cell  cluster sample  g1 g2
        c0    A       s1      1  4
        c1    A       s1      2  5
        c2    A       s2      3  6
        c3    B       s1      1  1
        c4    B       s2      2  2
        c5    B       s2      0  3
    """
    X = np.array([[1, 4], [2, 5], [3, 6], [1, 1], [2, 2], [0, 3]], dtype=np.float64)
    obs = pd.DataFrame(
        {
            "cluster": ["A", "A", "A", "B", "B", "B"],
            "sample": ["s1", "s1", "s2", "s1", "s2", "s2"],
            "condition": ["ctrl", "ctrl", "stim", "ctrl", "stim", "stim"],
        },
        index=[f"c{i}" for i in range(6)],
    )
    adata = ad.AnnData(X=X.copy(), obs=obs, var=pd.DataFrame(index=["g1", "g2"]))
    adata.layers["counts"] = sp.csr_matrix(X)
    return prepared(adata)
