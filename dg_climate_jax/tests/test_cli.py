import pytest
import xarray as xr

from dg_climate_jax import cli

SMALL = ["--timeend", "0.2", "--elements", "2", "2", "--polynomial-order", "2", "--log-level", "WARNING"]


def test_cli_writes_history(tmp_path, capsys):
    out = tmp_path / "runs" / "vortex.nc"
    cli.main(SMALL + ["--history-stride", "1", "--output", str(out)])
    assert out.exists()
    assert "Saved history dataset" in capsys.readouterr().out
    with xr.open_dataset(out) as ds:
        assert ds.attrs["problem"] == "isentropic_vortex"
        assert ds.attrs["polynomial_order"] == 2
        assert float(ds["time"][-1]) == pytest.approx(0.2)
        assert ds.sizes["element"] == 4


def test_cli_reads_config_file(tmp_path, capsys):
    path = tmp_path / "run.yaml"
    path.write_text(
        "parameters:\n"
        "  grav: 0.0\n"
        "  R_d: 1.0\n"
        "  kappa_d: 0.2857142857142857\n"
        "mesh:\n"
        "  elements: [2, 2]\n"
        "discretization:\n"
        "  polynomial_order: 2\n"
        "  numerical_flux: kennedy_gruber\n"
        "timestepping:\n"
        "  timeend: 0.1\n"
        "  method: ssprk33\n"
    )
    cli.main(["--config", str(path), "--log-level", "WARNING"])
    printed = capsys.readouterr().out
    assert "rhoe" in printed


def test_cli_overrides_method_and_flux(monkeypatch):
    seen = {}

    def fake_run(cfg):
        seen["cfg"] = cfg
        return xr.Dataset()

    monkeypatch.setattr(cli.driver, "run", fake_run)
    cli.main(SMALL + ["--method", "ark2", "--numerical-flux", "central", "--history-stride", "7", "--filter", "exponential"])
    cfg = seen["cfg"]
    assert cfg.timestepping.method == "ark2"
    assert cfg.timestepping.timeend == 0.2
    assert cfg.discretization.numerical_flux == "central"
    assert cfg.mesh.elements == (2, 2)
    assert cfg.history_stride == 7
    assert cfg.filter.kind == "exponential"


def test_cli_rejects_bad_arguments():
    with pytest.raises(SystemExit):
        cli.main(["--elements", "2", "2", "2"])
    with pytest.raises(SystemExit):
        cli.main(["--method", "euler"])
