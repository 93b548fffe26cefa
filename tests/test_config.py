import pytest
from pathlib import Path

from pbds.config import PseudobulkDSConfig


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def make_cfg(tmp_path, **kwargs):
    base = dict(input_path=tmp_path / "cells.h5ad", output_dir=tmp_path / "out")
    base.update(kwargs)
    return PseudobulkDSConfig(**base)


# -------------------------------------------------------------------------
# PseudobulkDSConfig
# -------------------------------------------------------------------------
def test_defaults(tmp_path):
    cfg = make_cfg(tmp_path)
    assert cfg.method == "deseq2"
    assert cfg.fun == "sum"
    assert cfg.filter == "both"
    assert cfg.layout == "long"
    assert cfg.results_dir == tmp_path / "out" / "pbds"
    assert isinstance(cfg.input_path, Path)


def test_method_and_layout_are_normalised(tmp_path):
    cfg = make_cfg(tmp_path, method=" LIMMA ", layout="Wide", filter="GENES")
    assert cfg.method == "limma"
    assert cfg.layout == "wide"
    assert cfg.filter == "genes"


def test_unknown_method_rejected(tmp_path):
    with pytest.raises(ValueError):
        make_cfg(tmp_path, method="edger")


def test_unknown_fun_rejected(tmp_path):
    with pytest.raises(ValueError):
        make_cfg(tmp_path, fun="geomean")


def test_contrasts_and_coefs_are_exclusive(tmp_path):
    with pytest.raises(ValueError, match="mutually exclusive"):
        make_cfg(tmp_path, contrasts=["stim_vs_ctrl"], coefs=["group_idstim"])


def test_contrasts_are_parsed(tmp_path):
    cfg = make_cfg(tmp_path, contrasts=["stim vs ctrl", " B_vs_A "])
    assert cfg.contrasts == ["stim_vs_ctrl", "B_vs_A"]

    with pytest.raises(ValueError):
        make_cfg(tmp_path, contrasts=["stim"])


@pytest.mark.parametrize(
    "field, value",
    [("alpha", 0.0), ("alpha", 1.5), ("n_jobs", 0), ("min_cells", -1), ("min_count", -1.0)],
)
def test_numeric_bounds(tmp_path, field, value):
    with pytest.raises(ValueError):
        make_cfg(tmp_path, **{field: value})


def test_empty_output_name_rejected(tmp_path):
    with pytest.raises(ValueError):
        make_cfg(tmp_path, output_name="  ")
