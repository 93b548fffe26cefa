from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from . import __version__, io_utils
from .backends import DSBackend, LimmaBackend, get_backend
from .cell_table import GROUP_KEY, prepare_cell_table
from .config import PseudobulkDSConfig
from .design import ContrastSpec, contrast_from_pair, model_matrix
from .ds_utils import DSResult, pb_ds
from .logging_utils import init_logging
from .pb_utils import PseudobulkCollection, aggregate_data, calc_cpm, calc_expr_freqs
from .results import ds_summary_table, res_ds

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _load_and_prepare(cfg: PseudobulkDSConfig):
    adata = io_utils.load_dataset(cfg.input_path)
    return prepare_cell_table(
        adata,
        cluster_key=cfg.cluster_key,
        sample_key=cfg.sample_key,
        group_key=cfg.group_key,
        covariates=tuple(cfg.covariates),
    )


def _contrast_spec(cfg: PseudobulkDSConfig, design) -> ContrastSpec:
    if cfg.contrasts:
        return ContrastSpec(
            contrasts={c: contrast_from_pair(design, c, factor=GROUP_KEY) for c in cfg.contrasts}
        )
    if cfg.coefs:
        return ContrastSpec(coefs=list(cfg.coefs))
    return ContrastSpec()


def _backend_for(cfg: PseudobulkDSConfig) -> DSBackend:
    if cfg.method == "deseq2" and cfg.fun != "sum":
        raise ValueError(f"method='deseq2' needs summed counts (fun='sum'), got fun={cfg.fun!r}")
    # summed counts go through logCPM before the linear model
    if cfg.method == "limma" and cfg.fun == "sum":
        return LimmaBackend(log_cpm=True)
    return get_backend(cfg.method)


def _settings_lines(cfg: PseudobulkDSConfig, *, mode: str, extra: Optional[list[str]] = None) -> list[str]:
    lines = [
        f"pbds_version={__version__}",
        f"mode={mode}",
        f"input_path={cfg.input_path}",
        f"cluster_key={cfg.cluster_key}",
        f"sample_key={cfg.sample_key}",
        f"group_key={cfg.group_key}",
        f"covariates={','.join(cfg.covariates) or 'NA'}",
        f"assay={cfg.assay}",
        f"fun={cfg.fun}",
        f"agg_min_cells={cfg.agg_min_cells}",
    ]
    return lines + list(extra or [])


# -----------------------------------------------------------------------------
# Orchestrator 1: aggregate only
# -----------------------------------------------------------------------------
def run_aggregate(cfg: PseudobulkDSConfig) -> PseudobulkCollection:
    """
    Aggregate the cell table and write the collection plus expression
    frequencies; no testing.
    """
    init_logging(cfg.logfile)
    LOGGER.info("Starting pseudobulk aggregation...")

    out_dir = cfg.results_dir
    out_dir.mkdir(parents=True, exist_ok=True)

    adata = _load_and_prepare(cfg)
    pb = aggregate_data(adata, assay=cfg.assay, fun=cfg.fun, min_cells=cfg.agg_min_cells)
    freqs = calc_expr_freqs(adata, assay=cfg.assay, threshold=cfg.freq_threshold)

    io_utils.export_pseudobulk(pb, out_dir, name="pseudobulk")
    io_utils.export_result_table(freqs.to_long("frq"), out_dir / "expression_frequencies.tsv")

    io_utils.write_settings(
        out_dir,
        "settings.txt",
        _settings_lines(cfg, mode="aggregate", extra=[f"freq_threshold={cfg.freq_threshold}"]),
    )
    LOGGER.info("Finished pseudobulk aggregation → %s", out_dir)
    return pb


# -----------------------------------------------------------------------------
# Orchestrator 2: aggregate + test + format
# -----------------------------------------------------------------------------
def run_pseudobulk_ds(cfg: PseudobulkDSConfig) -> DSResult:
    """
    Full pseudo-bulk DS run.

    Runs:
      - cell table preparation and aggregation (cfg.assay / cfg.fun)
      - expression frequencies per sample and group
      - per-cluster testing with one design for every cluster
      - result formatting in cfg.layout, joined with frequencies and CPM

    Writes (under output_dir/output_name):
      - ds_results.<layout>.tsv, ds_summary.tsv, experiment_info.tsv, design.tsv
      - pseudobulk.h5ad (+ tables) if cfg.save_pseudobulk
      - settings.txt
    """
    init_logging(cfg.logfile)
    LOGGER.info("Starting pseudobulk DS (method=%s)...", cfg.method)

    out_dir = cfg.results_dir
    out_dir.mkdir(parents=True, exist_ok=True)

    # ----------------------------
    # Aggregate
    # ----------------------------
    adata = _load_and_prepare(cfg)
    pb = aggregate_data(adata, assay=cfg.assay, fun=cfg.fun, min_cells=cfg.agg_min_cells)
    freqs = calc_expr_freqs(adata, assay=cfg.assay, threshold=cfg.freq_threshold)
    mean_expr = calc_cpm(pb) if pb.fun == "sum" else None

    # ----------------------------
    # Design + contrasts
    # ----------------------------
    factors = list(cfg.design_factors or [GROUP_KEY, *cfg.covariates])
    design = model_matrix(pb.experiment_info, factors, intercept=cfg.intercept)
    contrast = _contrast_spec(cfg, design)
    LOGGER.info("Design: factors=%s, columns=%s", factors, list(design.columns))

    # ----------------------------
    # Test
    # ----------------------------
    ds = pb_ds(
        pb,
        design,
        contrast,
        backend=_backend_for(cfg),
        min_cells=cfg.min_cells,
        filter=cfg.filter,
        min_count=cfg.min_count,
        fdr_method=cfg.fdr_method,
        alpha=cfg.alpha,
        n_jobs=cfg.n_jobs,
    )

    # ----------------------------
    # Format + export
    # ----------------------------
    table = res_ds(ds, layout=cfg.layout, frequencies=freqs, mean_expression=mean_expr)
    io_utils.export_result_table(table, out_dir / f"ds_results.{cfg.layout}.tsv")
    io_utils.export_result_table(ds_summary_table(ds, alpha=cfg.alpha), out_dir / "ds_summary.tsv")
    io_utils.export_result_table(pb.experiment_info, out_dir / "experiment_info.tsv", index=True)
    io_utils.export_result_table(ds.design, out_dir / "design.tsv", index=True)

    if cfg.save_pseudobulk:
        io_utils.export_pseudobulk(pb, out_dir, name="pseudobulk", tables=False)

    io_utils.write_settings(
        out_dir,
        "settings.txt",
        _settings_lines(
            cfg,
            mode="pseudobulk-ds",
            extra=[
                f"method={ds.method}",
                f"test_mode={ds.mode}",
                f"tests={','.join(ds.contrast_ids)}",
                f"design_factors={','.join(factors)}",
                f"design_columns={','.join(map(str, design.columns))}",
                f"intercept={cfg.intercept}",
                f"min_cells={cfg.min_cells}",
                f"filter={cfg.filter}",
                f"min_count={cfg.min_count}",
                f"fdr_method={cfg.fdr_method}",
                f"alpha={cfg.alpha}",
                f"freq_threshold={cfg.freq_threshold}",
                f"layout={cfg.layout}",
                f"n_jobs={cfg.n_jobs}",
                f"clusters_ok={','.join(ds.succeeded) or 'NA'}",
                f"clusters_not_tested={','.join(f'{k}:{v}' for k, v in ds.failed.items()) or 'NA'}",
            ],
        ),
    )

    LOGGER.info("Finished pseudobulk DS → %s", Path(out_dir))
    return ds
