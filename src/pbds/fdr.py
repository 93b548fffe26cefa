"""
Multiple-testing correction for per-(cluster, contrast) result sets.
"""

from __future__ import annotations

from typing import Union

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

METHODS = (
    "fdr_bh",  # Benjamini-Hochberg
    "fdr_by",  # Benjamini-Yekutieli
    "bonferroni",
    "holm",
)


def adjust_pvalues(
    pvalues: Union[np.ndarray, pd.Series, list],
    method: str = "fdr_bh",
) -> Union[np.ndarray, pd.Series]:
    """
    Adjust one family of p-values.

    NaN p-values (untested genes) stay NaN and do not count toward the family
    size. Callers pass exactly one (cluster, contrast) vector at a time; the
    function never pools across calls.

    Args:
        pvalues: Raw p-values.
        method: statsmodels ``multipletests`` method name.

    Returns:
        Adjusted p-values with the input's shape (and index, for a Series).
    """
    if method not in METHODS:
        raise ValueError(f"Unknown method: {method}. Available: {list(METHODS)}")

    index = pvalues.index if isinstance(pvalues, pd.Series) else None
    p = np.asarray(pvalues, dtype=np.float64).ravel()

    out = np.full(p.shape, np.nan, dtype=np.float64)
    ok = np.isfinite(p)
    if ok.any():
        _, q, _, _ = multipletests(np.clip(p[ok], 0.0, 1.0), method=method)
        out[ok] = q

    if index is not None:
        return pd.Series(out, index=index, name=getattr(pvalues, "name", None))
    return out
