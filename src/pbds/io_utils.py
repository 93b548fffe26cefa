from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import anndata as ad
import pandas as pd

from .pb_utils import PseudobulkCollection

LOGGER = logging.getLogger(__name__)


# =====================================================================
# AnnData I/O
# =====================================================================
def load_dataset(path: Path) -> ad.AnnData:
    """
    Load a cell table from ``.h5ad`` or a ``.zarr`` store, fully in memory.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input dataset not found: {path}")

    suffix = path.suffix.lower()
    LOGGER.info("Loading dataset → %s", path)
    if suffix == ".zarr" or (path.is_dir() and (path / ".zattrs").exists()):
        return ad.read_zarr(str(path))
    if suffix == ".h5ad":
        return ad.read_h5ad(str(path))
    raise ValueError(f"Unsupported input format {path.name!r}; use .h5ad or .zarr")


def save_adata(adata: ad.AnnData, out_path: Path) -> None:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    if out_path.suffix.lower() == ".zarr":
        adata.write_zarr(str(out_path))
    else:
        adata.write(str(out_path), compression="gzip")
    LOGGER.info("Wrote %s", out_path)


# =====================================================================
# Tables
# =====================================================================
def export_result_table(df: pd.DataFrame, out_path: Path, *, index: bool = False) -> Path:
    """Write a result / summary table as TSV."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, sep="\t", index=index, na_rep="NA")
    LOGGER.info("Wrote %s (%d rows)", out_path, df.shape[0])
    return out_path


def export_pseudobulk(
    pb: PseudobulkCollection,
    output_dir: Path,
    *,
    name: str = "pseudobulk",
    tables: bool = True,
) -> Path:
    """
    Persist a pseudo-bulk collection: ``<name>.h5ad`` (one layer per cluster),
    ``<name>.experiment_info.tsv`` and ``<name>.n_cells.tsv``. With ``tables``
    set, every cluster matrix is also written to ``<name>/<cluster>.tsv``.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    h5ad_path = output_dir / f"{name}.h5ad"
    save_adata(pb.to_anndata(), h5ad_path)

    export_result_table(pb.experiment_info, output_dir / f"{name}.experiment_info.tsv", index=True)
    export_result_table(pb.n_cells, output_dir / f"{name}.n_cells.tsv", index=True)

    if tables:
        tbl_dir = output_dir / name
        for cl in pb.clusters:
            m = pb.matrices[cl].copy()
            m.index.name = "gene"
            export_result_table(m, tbl_dir / f"{_safe_filename(cl)}.tsv", index=True)

    return h5ad_path


def _safe_filename(x: object) -> str:
    s = str(x).strip()
    out = "".join(c if (c.isalnum() or c in "-_.") else "_" for c in s)
    return out or "cluster"


# =====================================================================
# Provenance
# =====================================================================
def write_settings(out_dir: Path, name: str, lines: list[str], *, header: Optional[str] = None) -> Path:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / name
    body = ([f"# {header}"] if header else []) + [str(x) for x in lines]
    with out_path.open("w", encoding="utf-8") as f:
        f.write("\n".join(body).rstrip() + "\n")
    return out_path
