"""Distributed state container with halo exchange and global reductions."""
from __future__ import annotations

import logging
from typing import Mapping

import jax.numpy as jnp
import numpy as np

from .errors import ConfigurationError, NumericalInstabilityError
from .process_group import ProcessGroup, SerialProcessGroup
from .topology import BrickTopology
from .variables import VariableLayout

__all__ = ["DistributedState"]

logger = logging.getLogger(__name__)

_EXCHANGE_TAG = 17


class DistributedState:
    """Nodal values of one variable set on real and ghost elements.

    ``data`` has shape ``(Np, nvar, nelem)`` with the ghost elements stored
    after the ``nrealelem`` real ones. JAX arrays are immutable, so operations
    documented as in-place replace ``data``; a buffer is never shared between
    two containers.

    Attributes
    ----------
    data : jnp.ndarray, shape (Np, nvar, nelem)
    layout : VariableLayout
    weights : jnp.ndarray, shape (Np, nelem) or None
        Quadrature mass ``MJ`` used by weighted reductions; ``None`` gives plain
        Euclidean reductions.
    """

    def __init__(
        self,
        data,
        layout: VariableLayout,
        weights=None,
        topology: BrickTopology | None = None,
        process_group: ProcessGroup | None = None,
        nrealelem: int | None = None,
    ):
        data = jnp.asarray(data)
        if data.ndim != 3:
            raise ConfigurationError(f"state arrays are (Np, nvar, nelem), got shape {data.shape}")
        if data.shape[1] != layout.size:
            raise ConfigurationError(
                f"layout declares {layout.size} variables but the array holds {data.shape[1]}"
            )
        self.data = data
        self.layout = layout
        self.weights = weights
        self.topology = topology
        if process_group is None:
            process_group = topology.process_group if topology is not None else SerialProcessGroup()
        self.process_group = process_group
        if nrealelem is None:
            nrealelem = topology.nrealelem if topology is not None else data.shape[2]
        self.nrealelem = int(nrealelem)
        self._pending: list | None = None

    # construction -----------------------------------------------------
    @classmethod
    def zeros(cls, grid, layout: VariableLayout, dtype=None) -> "DistributedState":
        dtype = jnp.zeros(()).dtype if dtype is None else dtype
        data = jnp.zeros((grid.Np, layout.size, grid.nelem), dtype=dtype)
        return cls(data, layout, weights=grid.MJ, topology=grid.topology)

    @classmethod
    def from_array(cls, array, process_group: ProcessGroup | None = None) -> "DistributedState":
        """Wrap a plain vector as a single-node, single-element state."""

        arr = jnp.atleast_1d(jnp.asarray(array))
        layout = VariableLayout.of(*[f"y{i}" for i in range(arr.size)])
        return cls(arr.reshape(1, arr.size, 1), layout, process_group=process_group)

    def similar(self) -> "DistributedState":
        return DistributedState(
            jnp.zeros_like(self.data),
            self.layout,
            weights=self.weights,
            topology=self.topology,
            process_group=self.process_group,
            nrealelem=self.nrealelem,
        )

    def copy(self) -> "DistributedState":
        out = self.similar()
        out.data = self.data
        return out

    # shape ------------------------------------------------------------
    @property
    def Np(self) -> int:
        return self.data.shape[0]

    @property
    def nvar(self) -> int:
        return self.data.shape[1]

    @property
    def nelem(self) -> int:
        return self.data.shape[2]

    @property
    def realdata(self):
        return self.data[:, :, : self.nrealelem]

    def __getitem__(self, name: str):
        """Named view over real and ghost elements, shape ``(Np, nelem[, 3])``."""

        sl = self.layout.slices()[name]
        view = jnp.moveaxis(self.data[:, sl, :], 1, -1)
        return view[..., 0] if sl.stop - sl.start == 1 else view

    # halo exchange ----------------------------------------------------
    def begin_exchange(self) -> None:
        """Post sends of owned boundary-layer elements and receives for ghosts."""

        topo = self.topology
        if topo is None or topo.nabrtorank.size == 0:
            self._pending = []
            return
        if self._pending is not None and self._pending:
            raise RuntimeError("exchange already in progress")
        group = self.process_group
        host = np.asarray(self.data)
        pending = []
        for i, r in enumerate(topo.nabrtorank):
            r = int(r)
            sendbuf = host[:, :, topo.sendelems[topo.nabrtosend[i]]]
            recv_slice = topo.nabrtorecv[i]
            nrecv = recv_slice.stop - recv_slice.start
            expect = getattr(group, "expect", None)
            if expect is not None:
                expect(r, _EXCHANGE_TAG, (self.Np, self.nvar, nrecv), host.dtype)
            recv = group.irecv(r, _EXCHANGE_TAG)
            send = group.isend(sendbuf, r, _EXCHANGE_TAG)
            pending.append((recv_slice, recv, send))
        self._pending = pending

    def end_exchange(self) -> None:
        """Complete outstanding transfers and write the ghost region."""

        if self._pending is None:
            return
        data = self.data
        for recv_slice, recv, send in self._pending:
            buf = recv.wait()
            send.wait()
            lo = self.nrealelem + recv_slice.start
            hi = self.nrealelem + recv_slice.stop
            data = data.at[:, :, lo:hi].set(jnp.asarray(buf, dtype=data.dtype))
        self.data = data
        self._pending = None

    def exchange(self) -> "DistributedState":
        self.begin_exchange()
        self.end_exchange()
        return self

    # reductions -------------------------------------------------------
    def _local_weights(self):
        if self.weights is None:
            return None
        return self.weights[:, None, : self.nrealelem]

    def weighted_sum(self, name: str | None = None) -> float:
        """Global quadrature sum ``sum MJ q`` of one variable or of all slots."""

        q = self.realdata
        if name is not None:
            q = q[:, self.layout.slices()[name], :]
        w = self._local_weights()
        local = jnp.sum(q if w is None else w * q)
        return self.process_group.allreduce(float(local))

    def dot(self, other: "DistributedState", weighted: bool = True) -> float:
        a, b = self.realdata, other.realdata
        w = self._local_weights() if weighted else None
        local = jnp.sum(a * b if w is None else w * a * b)
        return self.process_group.allreduce(float(local))

    def norm(self, weighted: bool = True) -> float:
        return float(np.sqrt(self.dot(self, weighted=weighted)))

    def euclidean_distance(self, other: "DistributedState") -> float:
        diff = self.realdata - other.realdata
        local = jnp.sum(diff * diff)
        return float(np.sqrt(self.process_group.allreduce(float(local))))

    # inspection -------------------------------------------------------
    def snapshot(self) -> dict[str, np.ndarray]:
        """Read-only NumPy copies of each variable on the real elements."""

        out = {}
        for name in self.layout.names:
            arr = np.array(self[name][:, : self.nrealelem])
            arr.setflags(write=False)
            out[name] = arr
        return out

    def check_finite(self) -> None:
        if not bool(jnp.all(jnp.isfinite(self.realdata))):
            bad = [n for n, v in self.snapshot().items() if not np.all(np.isfinite(v))]
            raise NumericalInstabilityError(f"non-finite values in {bad} on rank {self.process_group.rank}")

    def set_from(self, views: Mapping) -> None:
        """Replace ``data`` from named views of shape ``(Np, nelem[, 3])``."""

        packed = self.layout.pack(views, shape=(self.Np, self.nelem), dtype=self.data.dtype)
        self.data = jnp.moveaxis(packed, -1, 1)

    def __repr__(self) -> str:
        return f"DistributedState(vars={self.layout.names}, shape={tuple(self.data.shape)})"

