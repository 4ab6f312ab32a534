"""Global diagnostics and xarray views of states."""
from __future__ import annotations

from typing import Sequence

import jax.numpy as jnp
import numpy as np
import xarray as xr

from .state import DistributedState
from .variables import VECTOR

__all__ = ["entropy_integral", "entropy_product", "as_dataset", "history_dataset"]

_COMPONENTS = ("x", "y", "z")


def _points(data):
    return jnp.moveaxis(data, 1, 2)


def entropy_integral(dg, Q: DistributedState) -> float:
    """Global ``sum MJ eta(q)`` over the real elements."""

    law = dg.balance_law
    n = Q.nrealelem
    eta = law.packed_state_to_entropy(_points(Q.realdata), _points(dg.state_auxiliary.data[:, :, :n]))
    local = jnp.sum(dg.grid.MJ[:, :n] * eta)
    return Q.process_group.allreduce(float(local))


def entropy_product(dg, Q: DistributedState, tendency: DistributedState) -> float:
    """Global ``sum MJ v(q) . dq/dt``, the discrete entropy production rate.

    Entropy variables beyond the prognostic ones (the geopotential slot of the
    dry atmosphere) pair with a zero tendency and are skipped.
    """

    law = dg.balance_law
    n = Q.nrealelem
    v = law.packed_state_to_entropy_variables(_points(Q.realdata), _points(dg.state_auxiliary.data[:, :, :n]))
    dq = _points(tendency.realdata)
    prod = jnp.sum(v[..., : dq.shape[-1]] * dq, axis=-1)
    local = jnp.sum(dg.grid.MJ[:, :n] * prod)
    return Q.process_group.allreduce(float(local))


def _state_arrays(Q: DistributedState) -> dict[str, np.ndarray]:
    snap = Q.snapshot()
    out = {}
    for name, k in Q.layout.fields:
        if k == VECTOR:
            for c in range(3):
                out[f"{name}_{_COMPONENTS[c]}"] = np.asarray(snap[name][..., c])
        elif k == 1:
            out[name] = np.asarray(snap[name])
        else:
            for c in range(k):
                out[f"{name}_{c}"] = np.asarray(snap[name][..., c])
    return out


def _coords(grid) -> dict:
    n = grid.nrealelem
    x = np.asarray(grid.coords[:, :n])
    coords = {
        "node": np.arange(grid.Np),
        "element": np.arange(n),
    }
    for d in range(grid.dim):
        coords[_COMPONENTS[d]] = (("node", "element"), x[..., d])
    return coords


def as_dataset(Q: DistributedState, grid, time: float | None = None) -> xr.Dataset:
    """Nodal values of ``Q`` on this rank's real elements as a dataset.

    Vector variables are split into ``_x``, ``_y`` and ``_z`` components; node
    coordinates are attached as coordinates.
    """

    arrays = _state_arrays(Q)
    data_vars = {name: (("node", "element"), a) for name, a in arrays.items()}
    ds = xr.Dataset(data_vars=data_vars, coords=_coords(grid))
    if time is not None:
        ds = ds.assign_coords(time=time)
    return ds


def history_dataset(states: Sequence[DistributedState], times: Sequence[float], grid) -> xr.Dataset:
    """Stack snapshots along a ``time`` dimension."""

    if len(states) != len(times):
        raise ValueError("need one time per state")
    arrays = [_state_arrays(s) for s in states]
    names = list(arrays[0])
    data_vars = {
        name: (("time", "node", "element"), np.stack([a[name] for a in arrays], axis=0)) for name in names
    }
    coords = _coords(grid)
    coords["time"] = np.asarray(times, dtype=np.float64)
    return xr.Dataset(data_vars=data_vars, coords=coords)
