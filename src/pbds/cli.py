from __future__ import annotations
from typing import Optional, List
import typer
from pathlib import Path
import warnings

from pydantic import ValidationError

from .pseudobulk_ds import run_pseudobulk_ds, run_aggregate
from .config import PseudobulkDSConfig
from .pb_utils import SUMMARY_FUNS


app = typer.Typer(help="pbds CLI — pseudo-bulk differential state analysis for multi-sample single-cell data.")

warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _split_list(values: Optional[List[str]]) -> Optional[List[str]]:
    """
    Supports e.g. --contrast A_vs_B,C_vs_B --contrast D_vs_B.
    """
    if values is None:
        return None
    expanded = []
    for v in values:
        expanded.extend([x.strip() for x in v.split(",") if x.strip()])
    return expanded or None


def _fun_completion(ctx: typer.Context, args: List[str], incomplete: str) -> List[str]:
    return [f for f in SUMMARY_FUNS if f.startswith(incomplete.lower())]


def _build_config(**kwargs) -> PseudobulkDSConfig:
    try:
        return PseudobulkDSConfig(**kwargs)
    except ValidationError as e:
        msgs = "; ".join(
            f"{'.'.join(str(x) for x in err.get('loc', ())) or 'config'}: {err.get('msg', '')}"
            for err in e.errors()
        )
        raise typer.BadParameter(msgs)


def _default_output_dir(input_path: Path, output_dir: Optional[Path]) -> Path:
    return output_dir or input_path.parent


# ======================================================================
#  run
# ======================================================================
@app.command("run", help="Aggregate, test every cluster and write formatted result tables.")
def run(
    # -----------------------------
    # I/O
    # -----------------------------
    input_path: Path = typer.Option(
        ..., "--input-path", "-i",
        help="[I/O] Cell table (.h5ad or .zarr).",
    ),
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", "-o",
        help="[I/O] Output directory (default = input parent).",
    ),
    output_name: str = typer.Option(
        "pbds", "--output-name",
        help="[I/O] Name of the results folder inside the output directory.",
    ),
    save_pseudobulk: bool = typer.Option(
        True, "--save-pseudobulk/--no-save-pseudobulk",
        help="[I/O] Also write the pseudo-bulk collection as .h5ad.",
    ),

    # -----------------------------
    # Keys
    # -----------------------------
    cluster_key: str = typer.Option("cluster_id", "--cluster-key", "-c", help="[Keys] Cluster column in .obs."),
    sample_key: str = typer.Option("sample_id", "--sample-key", "-s", help="[Keys] Sample column in .obs."),
    group_key: str = typer.Option("group_id", "--group-key", "-g", help="[Keys] Group/condition column in .obs."),
    covariates: Optional[List[str]] = typer.Option(
        None, "--covariate",
        help="[Keys] Per-sample covariate columns added to the design.",
    ),

    # -----------------------------
    # Aggregation
    # -----------------------------
    assay: str = typer.Option("counts", "--assay", "-a", help="[Aggregation] Layer to aggregate ('X' = .X)."),
    fun: str = typer.Option(
        "sum", "--fun",
        help="[Aggregation] Summary function.",
        autocompletion=_fun_completion,
    ),
    agg_min_cells: int = typer.Option(
        0, "--agg-min-cells",
        help="[Aggregation] Entries from fewer cells are marked missing.",
    ),

    # -----------------------------
    # Testing
    # -----------------------------
    method: str = typer.Option("deseq2", "--method", "-m", help="[DS] deseq2 or limma.", case_sensitive=False),
    contrasts: Optional[List[str]] = typer.Option(
        None, "--contrast",
        help="[DS] Group comparison 'A_vs_B' (repeatable or comma separated).",
    ),
    coefs: Optional[List[str]] = typer.Option(
        None, "--coef",
        help="[DS] Design column to test (repeatable). Excludes --contrast.",
    ),
    design_factors: Optional[List[str]] = typer.Option(
        None, "--design-factor",
        help="[DS] Experiment-info columns in the design (default: group key + covariates).",
    ),
    intercept: bool = typer.Option(True, "--intercept/--no-intercept", help="[DS] Include an intercept."),
    min_cells: int = typer.Option(10, "--min-cells", help="[DS] Minimum cells per cluster-sample."),
    filter: str = typer.Option("both", "--filter", help="[DS] none, samples, genes or both."),
    min_count: float = typer.Option(10.0, "--min-count", help="[DS] Minimum total count per gene."),
    alpha: float = typer.Option(0.05, "--alpha", help="[DS] FDR threshold for summaries."),

    # -----------------------------
    # Output tables
    # -----------------------------
    freq_threshold: float = typer.Option(
        0.0, "--freq-threshold",
        help="[Results] A cell expresses a gene when its value is above this.",
    ),
    layout: str = typer.Option("long", "--layout", help="[Results] long or wide."),

    # -----------------------------
    # Compute
    # -----------------------------
    n_jobs: int = typer.Option(1, "--n-jobs", "-j", help="[Compute] Parallel cluster fits."),
):
    """
    Run the full pseudo-bulk DS pipeline.
    """
    out_dir = _default_output_dir(input_path, output_dir)
    contrasts_list = _split_list(contrasts)
    coefs_list = _split_list(coefs)
    if contrasts_list and coefs_list:
        raise typer.BadParameter("Cannot specify both --contrast and --coef")

    cfg = _build_config(
        input_path=input_path,
        output_dir=out_dir,
        output_name=output_name,
        save_pseudobulk=save_pseudobulk,
        cluster_key=cluster_key,
        sample_key=sample_key,
        group_key=group_key,
        covariates=_split_list(covariates) or [],
        assay=assay,
        fun=fun,
        agg_min_cells=agg_min_cells,
        method=method,
        contrasts=contrasts_list,
        coefs=coefs_list,
        design_factors=_split_list(design_factors),
        intercept=intercept,
        min_cells=min_cells,
        filter=filter,
        min_count=min_count,
        alpha=alpha,
        freq_threshold=freq_threshold,
        layout=layout,
        n_jobs=n_jobs,
        logfile=out_dir / "pbds-run.log",
    )

    run_pseudobulk_ds(cfg)


# ======================================================================
#  aggregate
# ======================================================================
@app.command("aggregate", help="Pseudo-bulk aggregation only (writes .h5ad + TSV).")
def aggregate(
    input_path: Path = typer.Option(
        ..., "--input-path", "-i",
        help="[I/O] Cell table (.h5ad or .zarr).",
    ),
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", "-o",
        help="[I/O] Output directory (default = input parent).",
    ),
    output_name: str = typer.Option("pbds", "--output-name", help="[I/O] Results folder name."),
    cluster_key: str = typer.Option("cluster_id", "--cluster-key", "-c"),
    sample_key: str = typer.Option("sample_id", "--sample-key", "-s"),
    group_key: str = typer.Option("group_id", "--group-key", "-g"),
    assay: str = typer.Option("counts", "--assay", "-a"),
    fun: str = typer.Option("sum", "--fun", autocompletion=_fun_completion),
    agg_min_cells: int = typer.Option(0, "--agg-min-cells"),
    freq_threshold: float = typer.Option(0.0, "--freq-threshold"),
):
    out_dir = _default_output_dir(input_path, output_dir)
    cfg = _build_config(
        input_path=input_path,
        output_dir=out_dir,
        output_name=output_name,
        cluster_key=cluster_key,
        sample_key=sample_key,
        group_key=group_key,
        assay=assay,
        fun=fun,
        agg_min_cells=agg_min_cells,
        freq_threshold=freq_threshold,
        logfile=out_dir / "pbds-aggregate.log",
    )

    run_aggregate(cfg)


if __name__ == "__main__":
    app()
