"""Command-line entry point for running DG climate-core demos."""
from __future__ import annotations

import logging
from argparse import ArgumentParser
from pathlib import Path

from . import config, driver


def _build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        description=(
            "Run a DG spectral-element experiment (isentropic vortex by default) "
            "with configurable runtime options."
        )
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML run configuration (default: the packaged isentropic vortex).",
    )
    parser.add_argument(
        "--timeend",
        type=float,
        default=None,
        help="Final simulation time. Overrides the configuration.",
    )
    parser.add_argument(
        "--polynomial-order",
        type=int,
        default=None,
        help="Polynomial order N of the elements.",
    )
    parser.add_argument(
        "--elements",
        type=int,
        nargs="+",
        default=None,
        help="Elements per axis, e.g. '--elements 10 10'.",
    )
    parser.add_argument(
        "--method",
        choices=config.ODE_METHODS,
        default=None,
        help="Time integrator.",
    )
    parser.add_argument(
        "--numerical-flux",
        choices=config.NUMERICAL_FLUXES,
        default=None,
        help="First-order numerical flux.",
    )
    parser.add_argument(
        "--filter",
        choices=config.FILTERS,
        default=None,
        help="Modal filter applied after every step.",
    )
    parser.add_argument(
        "--history-stride",
        type=int,
        default=None,
        help="Stride, in timesteps, between saved history outputs.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level for the dg_climate_jax loggers (default: INFO).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Optional NetCDF file to write the resulting history dataset to.",
    )
    return parser


def _apply_overrides(cfg: config.RunConfig, args) -> config.RunConfig:
    data = config.as_dict(cfg)
    if args.timeend is not None:
        data["timestepping"]["timeend"] = args.timeend
    if args.method is not None:
        data["timestepping"]["method"] = args.method
    if args.polynomial_order is not None:
        data["discretization"]["polynomial_order"] = args.polynomial_order
    if args.numerical_flux is not None:
        data["discretization"]["numerical_flux"] = args.numerical_flux
    if args.elements is not None:
        data["mesh"]["elements"] = args.elements
        if len(args.elements) != len(cfg.mesh.elements):
            raise SystemExit("--elements must give one count per mesh axis")
    if args.filter is not None:
        data["filter"]["kind"] = args.filter
    if args.history_stride is not None:
        data["history_stride"] = args.history_stride
    return config.config_from_dict(data)


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    driver.configure_logging(getattr(logging, args.log_level.upper(), logging.INFO))

    cfg = config.load_config(args.config)
    cfg = _apply_overrides(cfg, args)
    ds = driver.run(cfg)

    if args.output is not None:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        ds.to_netcdf(args.output)
        print(f"Saved history dataset to {args.output}")

    print(ds)


if __name__ == "__main__":  # pragma: no cover
    main()
