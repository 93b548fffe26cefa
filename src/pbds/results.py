# src/pbds/results.py
from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, Literal, Optional, Union

import numpy as np
import pandas as pd

from .cell_table import CLUSTER_KEY
from .ds_utils import CONTRAST_KEY, RESULT_COLUMNS, DSResult
from .errors import InvalidLayout
from .pb_utils import FrequencyCollection, PseudobulkCollection

LOGGER = logging.getLogger(__name__)

LAYOUTS = ("long", "wide")
STAT_COLUMNS = ("logFC", "p_val", "p_adj")
KEY_COLUMNS = ["gene", CLUSTER_KEY]

ValueCollection = Union[FrequencyCollection, PseudobulkCollection]


# -----------------------------------------------------------------------------
# Column builder
# -----------------------------------------------------------------------------
def _sanitize_id(x: object) -> str:
    s = str(x).strip()
    # "." separates stat and contrast in wide column names
    return re.sub(r"[\s.]+", "_", s)


class _ColumnBuilder:
    """
    Registers output column names with their origin so that any clash is
    reported as InvalidLayout before a frame is assembled.
    """

    def __init__(self, initial: Iterable[str] = ()):
        self._origin: Dict[str, str] = {}
        for c in initial:
            self.add(c, "base")

    def add(self, name: str, origin: str) -> str:
        if name in self._origin:
            raise InvalidLayout(
                f"column {name!r} from {origin} collides with the one from {self._origin[name]}"
            )
        self._origin[name] = origin
        return name

    def suffixed(self, stats: Iterable[str], suffix: str, origin: str) -> Dict[str, str]:
        return {s: self.add(f"{s}.{suffix}", origin) for s in stats}


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _contrast_frame(ds: DSResult, contrast: str) -> pd.DataFrame:
    parts = [t for t in ds.tables.get(contrast, {}).values() if t is not None and not t.empty]
    if not parts:
        return pd.DataFrame(columns=RESULT_COLUMNS + [CONTRAST_KEY])
    return pd.concat(parts, ignore_index=True)


def _extra_columns(frames: Iterable[pd.DataFrame]) -> list[str]:
    """Backend columns shared by every frame, in first-seen order."""
    frames = [f for f in frames if not f.empty]
    if not frames:
        return []
    skip = set(RESULT_COLUMNS) | {CONTRAST_KEY}
    first = [c for c in frames[0].columns if c not in skip]
    return [c for c in first if all(c in f.columns for f in frames[1:])]


def _value_table(coll: ValueCollection, suffix: str, builder: _ColumnBuilder, origin: str) -> pd.DataFrame:
    """(gene, cluster_id, '<column>.<suffix>' ...) rows for every cluster of ``coll``."""
    names = {str(c): builder.add(f"{c}.{suffix}", origin) for c in coll.columns}
    parts = []
    for cl, m in coll.matrices.items():
        d = m.rename(columns=lambda c: names[str(c)]).copy()
        d.insert(0, CLUSTER_KEY, str(cl))
        d.insert(0, "gene", m.index.astype(str))
        parts.append(d.reset_index(drop=True))
    if not parts:
        return pd.DataFrame(columns=KEY_COLUMNS + list(names.values()))
    return pd.concat(parts, ignore_index=True)


def _join_values(
    df: pd.DataFrame,
    builder: _ColumnBuilder,
    frequencies: Optional[FrequencyCollection],
    mean_expression: Optional[PseudobulkCollection],
) -> pd.DataFrame:
    if frequencies is not None:
        vt = _value_table(frequencies, str(getattr(frequencies, "fun", "frq")), builder, "frequencies")
        df = df.merge(vt, how="left", on=KEY_COLUMNS)
    if mean_expression is not None:
        vt = _value_table(mean_expression, str(mean_expression.fun), builder, "mean_expression")
        df = df.merge(vt, how="left", on=KEY_COLUMNS)
    return df


# -----------------------------------------------------------------------------
# Formatter
# -----------------------------------------------------------------------------
def res_ds(
    ds: DSResult,
    *,
    layout: Literal["long", "wide"] = "long",
    frequencies: Optional[FrequencyCollection] = None,
    mean_expression: Optional[PseudobulkCollection] = None,
) -> pd.DataFrame:
    """
    Merge per-(contrast, cluster) result tables into one table.

    long: every contrast's rows stacked (contrast order, then cluster order),
          identified by ``contrast_id``.
    wide: one row per (gene, cluster) seen in any contrast, with
          ``<stat>.<contrast>`` columns; pairs absent from a contrast get NaN.

    Frequency / mean-expression values are left-joined by (gene, cluster) as
    ``<sample or group>.frq`` and ``<sample>.<fun>`` columns.
    """
    layout = str(layout).lower()
    if layout not in LAYOUTS:
        raise InvalidLayout(f"layout must be one of {LAYOUTS}, got {layout!r}")

    contrasts = ds.contrast_ids
    frames = {c: _contrast_frame(ds, c) for c in contrasts}

    if layout == "long":
        parts = [f for f in frames.values() if not f.empty]
        if parts:
            df = pd.concat(parts, ignore_index=True)
        else:
            df = pd.DataFrame(columns=RESULT_COLUMNS + [CONTRAST_KEY])
        if CLUSTER_KEY not in df.columns:
            df[CLUSTER_KEY] = np.nan
        if CONTRAST_KEY not in df.columns:
            df[CONTRAST_KEY] = np.nan
        builder = _ColumnBuilder(df.columns)
        df = _join_values(df, builder, frequencies, mean_expression)
        LOGGER.info("Formatted %d result rows (long, %d contrasts)", df.shape[0], len(contrasts))
        return df

    # wide
    builder = _ColumnBuilder(KEY_COLUMNS)
    suffixes: Dict[str, str] = {}
    for c in contrasts:
        s = _sanitize_id(c)
        if not s:
            raise InvalidLayout(f"contrast id {c!r} is empty after sanitising")
        suffixes[c] = s

    extras = _extra_columns(frames.values())
    stats = list(STAT_COLUMNS) + extras

    # base = union of (gene, cluster) pairs, first-seen order
    keys = [f[KEY_COLUMNS] for f in frames.values() if not f.empty]
    if keys:
        base = pd.concat(keys, ignore_index=True).drop_duplicates(ignore_index=True)
    else:
        base = pd.DataFrame(columns=KEY_COLUMNS)

    for c in contrasts:
        rename = builder.suffixed(stats, suffixes[c], f"contrast {c!r}")
        f = frames[c]
        sub = f.loc[:, KEY_COLUMNS + [s for s in stats if s in f.columns]].rename(columns=rename)
        for new in rename.values():
            if new not in sub.columns:
                sub[new] = np.nan
        # base already holds the union of pairs, so a left join is the full outer join
        base = base.merge(sub, how="left", on=KEY_COLUMNS)

    base = _join_values(base, builder, frequencies, mean_expression)
    LOGGER.info("Formatted %d result rows (wide, %d contrasts)", base.shape[0], len(contrasts))
    return base


def ds_summary_table(ds: DSResult, *, alpha: float = 0.05) -> pd.DataFrame:
    """
    One row per (cluster, contrast): status, number of tested genes and the
    number significant at ``alpha`` (split by direction).
    """
    rows = []
    status = ds.summary.set_index(CLUSTER_KEY) if not ds.summary.empty else pd.DataFrame()
    for cl in status.index.astype(str):
        st = status.loc[cl]
        for c in ds.contrast_ids:
            tbl = ds.tables.get(c, {}).get(cl, None)
            row = {
                CLUSTER_KEY: cl,
                CONTRAST_KEY: c,
                "status": st["status"],
                "reason": st.get("reason", ""),
                "n_tested": np.nan,
                "n_sig": np.nan,
                "n_up": np.nan,
                "n_down": np.nan,
            }
            if tbl is not None:
                sig = pd.to_numeric(tbl["p_adj"], errors="coerce") < float(alpha)
                lfc = pd.to_numeric(tbl["logFC"], errors="coerce")
                row.update(
                    n_tested=int(tbl["p_val"].notna().sum()),
                    n_sig=int(sig.sum()),
                    n_up=int((sig & (lfc > 0)).sum()),
                    n_down=int((sig & (lfc < 0)).sum()),
                )
            rows.append(row)
    return pd.DataFrame(
        rows,
        columns=[CLUSTER_KEY, CONTRAST_KEY, "status", "reason", "n_tested", "n_sig", "n_up", "n_down"],
    )
