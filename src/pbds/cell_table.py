# src/pbds/cell_table.py
from __future__ import annotations

import logging
from typing import Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd

from .errors import EmptyInput, InvalidAssay, InvalidGroupKeys

LOGGER = logging.getLogger(__name__)

CLUSTER_KEY = "cluster_id"
SAMPLE_KEY = "sample_id"
GROUP_KEY = "group_id"

# "X" addresses adata.X; everything else is looked up in adata.layers
X_ASSAY = "X"


# -----------------------------------------------------------------------------
# Preparation
# -----------------------------------------------------------------------------
def _as_category(values: pd.Series) -> pd.Categorical:
    """Keep an existing categorical order, otherwise sort the distinct labels."""
    if isinstance(values.dtype, pd.CategoricalDtype):
        cat = values.cat.remove_unused_categories()
        return pd.Categorical(cat.astype(str), categories=[str(c) for c in cat.cat.categories])
    s = values.astype(str)
    return pd.Categorical(s, categories=sorted(pd.unique(s)))


def prepare_cell_table(
    adata: ad.AnnData,
    *,
    cluster_key: str = CLUSTER_KEY,
    sample_key: str = SAMPLE_KEY,
    group_key: str = GROUP_KEY,
    covariates: Sequence[str] = (),
    drop: bool = False,
) -> ad.AnnData:
    """
    Return a copy of ``adata`` with standardised cell metadata.

    The copy carries categorical ``cluster_id``, ``sample_id`` and ``group_id``
    obs columns (unused levels dropped) and ``uns['experiment_info']``. If
    ``drop`` is set, every other obs column except ``covariates`` is removed.

    The input object is never modified.
    """
    if adata.n_obs == 0:
        raise EmptyInput("Cell table has zero cells.")

    wanted = {CLUSTER_KEY: cluster_key, SAMPLE_KEY: sample_key, GROUP_KEY: group_key}
    missing = [k for k in list(wanted.values()) + list(covariates) if k not in adata.obs]
    if missing:
        raise InvalidGroupKeys(f"keys not in adata.obs: {missing}", keys=missing)

    for std, src in wanted.items():
        if adata.obs[src].isna().any():
            raise InvalidGroupKeys(
                f"{src!r} has missing values; every cell needs a {std}", keys=[src]
            )

    out = adata.copy()
    obs = out.obs

    new_cols = {std: _as_category(adata.obs[src]) for std, src in wanted.items()}
    if drop:
        keep = [c for c in covariates if c not in new_cols]
        obs = obs.loc[:, keep].copy()
    for std, cat in new_cols.items():
        obs[std] = cat
    out.obs = obs

    out.uns["experiment_info"] = experiment_info(out, covariates=covariates)

    LOGGER.info(
        "Prepared cell table: %d cells x %d genes, %d clusters, %d samples, %d groups",
        out.n_obs,
        out.n_vars,
        len(out.obs[CLUSTER_KEY].cat.categories),
        len(out.obs[SAMPLE_KEY].cat.categories),
        len(out.obs[GROUP_KEY].cat.categories),
    )
    return out


# -----------------------------------------------------------------------------
# Experiment info
# -----------------------------------------------------------------------------
def sample_order(adata: ad.AnnData) -> pd.Index:
    s = adata.obs[SAMPLE_KEY]
    if isinstance(s.dtype, pd.CategoricalDtype):
        present = set(s.astype(str))
        return pd.Index([str(c) for c in s.cat.categories if str(c) in present], name=SAMPLE_KEY)
    return pd.Index(sorted(pd.unique(s.astype(str))), name=SAMPLE_KEY)


def experiment_info(adata: ad.AnnData, *, covariates: Sequence[str] = ()) -> pd.DataFrame:
    """
    One row per sample: ``sample_id``, ``group_id``, ``n_cells`` and every
    requested covariate. Raises if a sample maps to more than one group or a
    covariate is not constant within a sample.
    """
    for k in (SAMPLE_KEY, GROUP_KEY):
        if k not in adata.obs:
            raise InvalidGroupKeys(f"{k!r} not in adata.obs; run prepare_cell_table first", keys=[k])

    samples = sample_order(adata)
    obs = adata.obs
    s = obs[SAMPLE_KEY].astype(str)

    ei = pd.DataFrame(index=samples)
    ei[SAMPLE_KEY] = samples.to_numpy()

    for col in [GROUP_KEY, *covariates]:
        per_sample = obs[col].astype(str).groupby(s.to_numpy()).unique()
        bad = [sid for sid, vals in per_sample.items() if len(vals) != 1]
        if bad:
            raise InvalidGroupKeys(
                f"{col!r} is not constant within sample(s) {bad[:5]}"
                + (" ..." if len(bad) > 5 else ""),
                keys=[col],
            )
        # values keep the obs dtype so numeric covariates stay numeric
        first = obs[col].groupby(s.to_numpy(), sort=False).first()
        ei[col] = first.reindex(samples.to_numpy()).to_numpy()

    ei[GROUP_KEY] = pd.Categorical(
        ei[GROUP_KEY],
        categories=[str(c) for c in _as_category(obs[GROUP_KEY]).categories],
    )
    ei["n_cells"] = s.value_counts().reindex(samples).fillna(0).astype(int).to_numpy()
    ei.index.name = SAMPLE_KEY
    return ei


def get_experiment_info(adata: ad.AnnData) -> pd.DataFrame:
    ei = adata.uns.get("experiment_info", None)
    if isinstance(ei, pd.DataFrame) and not ei.empty:
        return ei
    return experiment_info(adata)


# -----------------------------------------------------------------------------
# Assay access
# -----------------------------------------------------------------------------
def available_assays(adata: ad.AnnData) -> list[str]:
    out = list(adata.layers.keys())
    if adata.X is not None:
        out.insert(0, X_ASSAY)
    return out


def get_assay(adata: ad.AnnData, assay: Optional[str]):
    """
    Return the (cells x genes) matrix for ``assay`` without copying or
    densifying it. ``None`` and ``"X"`` both select ``adata.X``.
    """
    if assay is None or assay == X_ASSAY:
        if adata.X is None:
            raise InvalidAssay(X_ASSAY, available_assays(adata))
        return adata.X
    if assay not in adata.layers:
        raise InvalidAssay(assay, available_assays(adata))
    return adata.layers[assay]


def check_group_keys(adata: ad.AnnData, keys: Sequence[str]) -> list[str]:
    keys = [str(k) for k in keys]
    if not keys:
        raise InvalidGroupKeys("at least one grouping key is required")
    missing = [k for k in keys if k not in adata.obs]
    if missing:
        raise InvalidGroupKeys(f"grouping keys not in adata.obs: {missing}", keys=missing)
    return keys


def key_levels(adata: ad.AnnData, key: str) -> pd.Index:
    """Distinct labels of an obs key in deterministic order."""
    if key == SAMPLE_KEY:
        return pd.Index(get_experiment_info(adata).index.astype(str), name=key)
    return pd.Index([str(c) for c in _as_category(adata.obs[key]).categories], name=key)


def codes_for(adata: ad.AnnData, key: str, levels: pd.Index) -> np.ndarray:
    labels = adata.obs[key].astype(str).to_numpy()
    return levels.get_indexer(labels)
