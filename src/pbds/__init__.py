"""Pseudo-bulk differential state analysis for multi-sample single-cell data."""
from __future__ import annotations

__version__ = "0.3.0"

from .errors import (
    PseudobulkError,
    InvalidAssay,
    InvalidGroupKeys,
    EmptyInput,
    DesignSampleMismatch,
    EmptyCluster,
    BackendFailure,
    InvalidLayout,
    RunCancelled,
)
from .cell_table import prepare_cell_table, experiment_info
from .pb_utils import (
    PseudobulkCollection,
    FrequencyCollection,
    aggregate_data,
    calc_expr_freqs,
    calc_cpm,
)
from .design import ContrastSpec, model_matrix, contrast_from_pair
from .ds_utils import DSResult, pb_ds
from .results import res_ds, ds_summary_table

__all__ = [
    "__version__",
    "PseudobulkError",
    "InvalidAssay",
    "InvalidGroupKeys",
    "EmptyInput",
    "DesignSampleMismatch",
    "EmptyCluster",
    "BackendFailure",
    "InvalidLayout",
    "RunCancelled",
    "prepare_cell_table",
    "experiment_info",
    "PseudobulkCollection",
    "FrequencyCollection",
    "aggregate_data",
    "calc_expr_freqs",
    "calc_cpm",
    "ContrastSpec",
    "model_matrix",
    "contrast_from_pair",
    "DSResult",
    "pb_ds",
    "res_ds",
    "ds_summary_table",
]
