import pytest
from typer.testing import CliRunner
from unittest.mock import patch

from pbds.cli import app

runner = CliRunner()


# ---------------------------------------------------------
# Top-level CLI
# ---------------------------------------------------------
def test_cli_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "pbds CLI" in result.output


# ---------------------------------------------------------
# run
# ---------------------------------------------------------
def test_run_help():
    result = runner.invoke(app, ["run", "--help"])
    assert result.exit_code == 0
    assert "--contrast" in result.output


def test_run_requires_input():
    result = runner.invoke(app, ["run"])
    assert result.exit_code != 0


def test_run_rejects_contrast_and_coef():
    result = runner.invoke(
        app,
        ["run", "-i", "cells.h5ad", "--contrast", "stim_vs_ctrl", "--coef", "group_idstim"],
    )
    assert result.exit_code != 0
    assert "Cannot specify both" in result.output


def test_run_invalid_method_rejected():
    result = runner.invoke(app, ["run", "-i", "cells.h5ad", "--method", "edger"])
    assert result.exit_code != 0
    assert "method" in result.output


@patch("pbds.cli.run_pseudobulk_ds")
def test_run_dispatch(mock_run, tmp_path):
    result = runner.invoke(
        app,
        [
            "run",
            "--input-path", str(tmp_path / "cells.h5ad"),
            "--output-dir", str(tmp_path / "out"),
            "--method", "LIMMA",
            "--contrast", "stim_vs_ctrl,B_vs_ctrl",
            "--covariate", "batch",
            "--layout", "wide",
            "--n-jobs", "2",
        ],
    )
    assert result.exit_code == 0, result.output
    mock_run.assert_called_once()
    cfg = mock_run.call_args[0][0]
    assert cfg.method == "limma"
    assert cfg.contrasts == ["stim_vs_ctrl", "B_vs_ctrl"]
    assert cfg.covariates == ["batch"]
    assert cfg.layout == "wide"
    assert cfg.n_jobs == 2
    assert cfg.logfile == tmp_path / "out" / "pbds-run.log"


@patch("pbds.cli.run_pseudobulk_ds")
def test_run_output_dir_defaults_to_input_parent(mock_run, tmp_path):
    result = runner.invoke(app, ["run", "-i", str(tmp_path / "cells.h5ad")])
    assert result.exit_code == 0, result.output
    cfg = mock_run.call_args[0][0]
    assert cfg.output_dir == tmp_path


# ---------------------------------------------------------
# aggregate
# ---------------------------------------------------------
def test_aggregate_help():
    result = runner.invoke(app, ["aggregate", "--help"])
    assert result.exit_code == 0
    assert "aggregation only" in result.output


@patch("pbds.cli.run_aggregate")
def test_aggregate_dispatch(mock_run, tmp_path):
    result = runner.invoke(
        app,
        ["aggregate", "-i", str(tmp_path / "cells.h5ad"), "--fun", "mean", "--assay", "X"],
    )
    assert result.exit_code == 0, result.output
    cfg = mock_run.call_args[0][0]
    assert cfg.fun == "mean"
    assert cfg.assay == "X"


def test_aggregate_bad_fun():
    result = runner.invoke(app, ["aggregate", "-i", "cells.h5ad", "--fun", "geomean"])
    assert result.exit_code != 0
