# src/pbds/design.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .cell_table import GROUP_KEY

LOGGER = logging.getLogger(__name__)

Weights = Union[Sequence[float], np.ndarray, pd.Series, Mapping[str, float]]


# -----------------------------------------------------------------------------
# Design matrices
# -----------------------------------------------------------------------------
def model_matrix(
    experiment_info: pd.DataFrame,
    factors: Union[str, Sequence[str]] = GROUP_KEY,
    *,
    intercept: bool = True,
) -> pd.DataFrame:
    """
    Treatment-coded design matrix (samples x terms) from the per-sample table.

    Categorical/string factors contribute one column per non-reference level
    named ``<factor><level>`` (reference = first level); numeric factors enter
    as-is. Without an intercept the first categorical factor is coded with one
    column per level (cell-means coding).
    """
    if isinstance(factors, str):
        factors = [factors]
    factors = list(factors)
    missing = [f for f in factors if f not in experiment_info.columns]
    if missing:
        raise KeyError(f"design factors not in experiment info: {missing}")

    cols: dict[str, np.ndarray] = {}
    if intercept:
        cols["(Intercept)"] = np.ones(experiment_info.shape[0])

    full_coding = not intercept
    for f in factors:
        v = experiment_info[f]
        if pd.api.types.is_numeric_dtype(v) and not isinstance(v.dtype, pd.CategoricalDtype):
            cols[str(f)] = v.to_numpy(dtype=np.float64)
            continue
        if isinstance(v.dtype, pd.CategoricalDtype):
            levels = [str(x) for x in v.cat.categories if (v.astype(str) == str(x)).any()]
        else:
            levels = sorted(pd.unique(v.astype(str)))
        vs = v.astype(str).to_numpy()
        use = levels if full_coding else levels[1:]
        full_coding = False
        for lv in use:
            cols[f"{f}{lv}"] = (vs == lv).astype(np.float64)

    return pd.DataFrame(cols, index=experiment_info.index.astype(str))


# -----------------------------------------------------------------------------
# Contrasts
# -----------------------------------------------------------------------------
def _normalize_pair(s: str) -> tuple[str, str]:
    s = str(s).strip()
    if "_vs_" in s:
        a, b = s.split("_vs_", 1)
    elif " vs " in s:
        a, b = s.split(" vs ", 1)
    else:
        raise ValueError(f"Invalid contrast spec {s!r}. Use 'A_vs_B'.")
    a = a.strip()
    b = b.strip()
    if not a or not b:
        raise ValueError(f"Invalid contrast spec {s!r}. Use 'A_vs_B'.")
    if a == b:
        raise ValueError(f"Invalid contrast spec {s!r}: A and B must differ.")
    return a, b


def _level_weights(design: pd.DataFrame, factor: str, level: str) -> np.ndarray:
    """
    Weights giving the mean of ``level`` relative to the intercept-coded
    reference (a zero vector for the reference level of a treatment design).
    """
    col = f"{factor}{level}"
    w = np.zeros(design.shape[1], dtype=np.float64)
    if col in design.columns:
        w[design.columns.get_loc(col)] = 1.0
        return w
    if "(Intercept)" in design.columns:
        # reference level: absorbed into the intercept
        return w
    raise ValueError(f"level {level!r} of {factor!r} has no column in the design ({list(design.columns)})")


def contrast_from_pair(design: pd.DataFrame, pair: str, *, factor: str = GROUP_KEY) -> np.ndarray:
    """
    Contrast weights for ``'A_vs_B'`` (A minus B) on the levels of ``factor``.

    Works for treatment-coded designs with an intercept and for cell-means
    designs without one.
    """
    a, b = _normalize_pair(pair)
    w = _level_weights(design, factor, a) - _level_weights(design, factor, b)
    if not np.any(w):
        raise ValueError(f"contrast {pair!r} is empty for design columns {list(design.columns)}")
    return w


@dataclass(frozen=True)
class ContrastSpec:
    """
    What to test on each cluster.

    Exactly one of:
      - contrasts: name -> weights over the design columns (a sequence, a
        Series/mapping keyed by column name) or a (terms x contrasts) DataFrame
      - coefs: design column indices or names, each tested on its own
    When neither is given the last design column is tested.
    """

    contrasts: Optional[Union[Mapping[str, Weights], pd.DataFrame]] = None
    coefs: Optional[Sequence[Union[int, str]]] = None

    def __post_init__(self):
        if self.contrasts is not None and self.coefs is not None:
            raise ValueError("contrasts and coefs are mutually exclusive")

    @property
    def mode(self) -> str:
        return "contrast" if self.contrasts is not None else "coef"

    def resolve(self, design_columns: Sequence[str]) -> dict[str, np.ndarray]:
        """Return name -> weight vector aligned to ``design_columns``."""
        design_columns = [str(c) for c in design_columns]
        n = len(design_columns)

        if self.contrasts is None:
            coefs = list(self.coefs) if self.coefs is not None else [n - 1]
            out: dict[str, np.ndarray] = {}
            for c in coefs:
                if isinstance(c, (int, np.integer)):
                    if not -n <= int(c) < n:
                        raise ValueError(f"coef index {c} out of range for {n} design columns")
                    j = int(c) % n
                else:
                    if str(c) not in design_columns:
                        raise ValueError(f"coef {c!r} not in design columns {design_columns}")
                    j = design_columns.index(str(c))
                w = np.zeros(n, dtype=np.float64)
                w[j] = 1.0
                out[design_columns[j]] = w
            return out

        items: list[tuple[str, Weights]]
        if isinstance(self.contrasts, pd.DataFrame):
            items = [(str(c), self.contrasts[c]) for c in self.contrasts.columns]
        else:
            items = [(str(k), v) for k, v in self.contrasts.items()]

        out = {}
        for name, v in items:
            if isinstance(v, pd.Series) or isinstance(v, Mapping):
                v = pd.Series(v, dtype=np.float64)
                unknown = [k for k in v.index.astype(str) if k not in design_columns]
                if unknown:
                    raise ValueError(f"contrast {name!r} names unknown design columns {unknown}")
                v = v.reindex(design_columns).fillna(0.0)
            w = np.asarray(v, dtype=np.float64).ravel()
            if w.shape[0] != n:
                raise ValueError(
                    f"contrast {name!r} has {w.shape[0]} weights, design has {n} columns"
                )
            out[name] = w
        return out
