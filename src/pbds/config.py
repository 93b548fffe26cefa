from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .design import _normalize_pair
from .pb_utils import SUMMARY_FUNS


class PseudobulkDSConfig(BaseModel):

    # ---- I/O ----
    input_path: Path = Field(..., description="Cell table (.h5ad or .zarr)")
    output_dir: Path
    output_name: str = "pbds"
    save_pseudobulk: bool = True

    # ---- Cell table keys ----
    cluster_key: str = "cluster_id"
    sample_key: str = "sample_id"
    group_key: str = "group_id"
    covariates: List[str] = Field(default_factory=list)

    # ---- Aggregation ----
    assay: str = "counts"
    fun: str = "sum"
    agg_min_cells: int = Field(0, ge=0)

    # ---- DS testing ----
    method: Literal["deseq2", "limma"] = "deseq2"
    min_cells: int = Field(10, ge=0)
    filter: Literal["none", "samples", "genes", "both"] = "both"
    min_count: float = Field(10.0, ge=0.0)

    design_factors: Optional[List[str]] = Field(
        None,
        description="Experiment-info columns for the design (default: group key plus covariates)",
    )
    intercept: bool = True
    contrasts: Optional[List[str]] = Field(
        None,
        description="Group comparisons as 'A_vs_B' (A minus B)",
    )
    coefs: Optional[List[str]] = Field(
        None,
        description="Design columns to test one at a time",
    )

    fdr_method: str = "fdr_bh"
    alpha: float = Field(0.05, gt=0.0, lt=1.0)

    # ---- Results ----
    freq_threshold: float = 0.0
    layout: Literal["long", "wide"] = "long"

    # ---- Compute ----
    n_jobs: int = Field(1, ge=1)

    # ---- Logging ----
    logfile: Optional[Path] = None

    @property
    def results_dir(self) -> Path:
        return self.output_dir / self.output_name

    # ---- Validators ----
    @field_validator("method", "layout", "filter", mode="before")
    @classmethod
    def lower_case(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("fun")
    @classmethod
    def check_fun(cls, v: str):
        v = v.strip()
        if v not in SUMMARY_FUNS:
            raise ValueError(f"fun must be one of {list(SUMMARY_FUNS)}, got {v!r}")
        return v

    @field_validator("contrasts")
    @classmethod
    def check_contrasts(cls, v):
        if v is None:
            return None
        out = []
        for s in v:
            a, b = _normalize_pair(s)
            out.append(f"{a}_vs_{b}")
        if not out:
            return None
        return out

    @model_validator(mode="after")
    def check_tests(self):
        if self.contrasts is not None and self.coefs is not None:
            raise ValueError("contrasts and coefs are mutually exclusive")
        if not self.output_name.strip():
            raise ValueError("output_name must not be empty")
        return self
