"""Discontinuous spectral-element grid on a brick topology.

Node coordinates, metric terms, Jacobians and face geometry are computed once
in float64 NumPy and stored as JAX arrays. Volume nodes of an element are
numbered ``n = i + Nq*j + Nq**2*k``; reshaping a nodal array to
``(Nq,)*dim`` in C order therefore gives axes ``(k, j, i)``.

Metric terms use the cross-product form in 2D and the conservative curl form
in 3D, so the discrete metric identity
``sum_a D_a (J dxi_a/dx) = 0`` holds to round-off on any warped mesh.
"""
from __future__ import annotations

import logging
from typing import Callable

import jax.numpy as jnp
import numpy as np

from .elements import reference_element
from .errors import ConfigurationError
from .topology import BrickTopology

__all__ = ["SpectralElementGrid", "apply_1d_operator"]

logger = logging.getLogger(__name__)


def apply_1d_operator(D, f, axis: int, dim: int):
    """Apply the 1D operator ``D`` to nodal values ``f`` (shape ``(Np, ...)``) along ``xi_axis``.

    Works for NumPy and JAX arrays alike; the result has the array type of
    the module used to build ``D``.
    """

    xp = np if isinstance(D, np.ndarray) else jnp
    Nq = D.shape[0]
    rest = f.shape[1:]
    g = f.reshape((Nq,) * dim + rest)
    ax = dim - 1 - axis
    g = xp.moveaxis(g, ax, 0)
    g = xp.tensordot(D, g, axes=(1, 0))
    g = xp.moveaxis(g, 0, ax)
    return g.reshape(f.shape)


def _face_node_indices(Nq: int, dim: int) -> np.ndarray:
    """Volume node ids of each face's nodes, shape ``(Nfp, 2*dim)``."""

    idx = np.arange(Nq**dim).reshape((Nq,) * dim)  # axes (k, j, i)
    faces = []
    for d in range(dim):
        ax = dim - 1 - d
        for side in (0, Nq - 1):
            sl = [slice(None)] * dim
            sl[ax] = side
            faces.append(idx[tuple(sl)].reshape(-1))
    return np.stack(faces, axis=1)


class SpectralElementGrid:
    """Geometric factors of a :class:`BrickTopology` with LGL nodes.

    Parameters
    ----------
    topology : BrickTopology
    polynomialorder : int
    meshwarp : callable, optional
        ``meshwarp(x, y, z) -> (x, y, z)`` applied to node coordinates after
        multilinear interpolation of the element vertices. ``z`` is zero in 2D.

    Attributes
    ----------
    coords : (Np, nelem, 3)
    J, MJ, MJI : (Np, nelem)
    metric : (Np, nelem, dim, 3)
        ``metric[n, e, a] = grad xi_a``.
    normal : (Nfp, nface, nrealelem, 3)
    sJ, sMJ, vMJI : (Nfp, nface, nrealelem)
    vmap_minus : (Nfp, nface)
    elem_plus, node_plus : (Nfp, nface, nrealelem)
        Element and volume node supplying the exterior trace.
    """

    def __init__(
        self,
        topology: BrickTopology,
        polynomialorder: int,
        meshwarp: Callable | None = None,
        kind: str = "lgl",
    ):
        if kind != "lgl":
            raise ConfigurationError("the DG grid needs Lobatto points so faces coincide with volume nodes")
        self.topology = topology
        self.dim = topology.dim
        self.N = int(polynomialorder)
        self.element = reference_element(self.N, kind)
        self.Nq = self.element.Nq
        self.Np = self.Nq**self.dim
        self.Nfp = self.Nq ** (self.dim - 1)
        self.nface = 2 * self.dim
        self.nelem = topology.nelem
        self.nrealelem = topology.nrealelem

        D = np.asarray(self.element.derivative)
        r = np.asarray(self.element.points)
        w = np.asarray(self.element.weights)
        self._D_np = D

        x = self._nodal_coordinates(r, meshwarp)
        Jmetric, J = self._metric_terms(D, x)
        if np.any(J <= 0):
            raise ConfigurationError("degenerate or inverted element: Jacobian is not positive everywhere")

        wvol = self._tensor_weights(w, self.dim)
        MJ = J * wvol[:, None]

        vmapM = _face_node_indices(self.Nq, self.dim)
        wface = self._tensor_weights(w, self.dim - 1) if self.dim > 1 else np.ones(1)
        nreal = self.nrealelem
        normal = np.zeros((self.Nfp, self.nface, nreal, 3))
        sJ = np.zeros((self.Nfp, self.nface, nreal))
        for f in range(self.nface):
            d, side = divmod(f, 2)
            vec = Jmetric[vmapM[:, f], :nreal, d, :]
            mag = np.linalg.norm(vec, axis=-1)
            sign = 1.0 if side else -1.0
            normal[:, f] = sign * vec / mag[..., None]
            sJ[:, f] = mag
        sMJ = sJ * wface[:, None, None]
        vMJI = 1.0 / MJ[vmapM, :nreal]

        topo = topology
        elem_plus = np.empty((self.Nfp, self.nface, nreal), dtype=np.int64)
        node_plus = np.empty((self.Nfp, self.nface, nreal), dtype=np.int64)
        for f in range(self.nface):
            elem_plus[:, f, :] = topo.elemtoelem[f][None, :]
            node_plus[:, f, :] = vmapM[:, topo.elemtoface[f]]

        self.coords = jnp.asarray(x)
        self.J = jnp.asarray(J)
        self.MJ = jnp.asarray(MJ)
        self.MJI = jnp.asarray(1.0 / MJ)
        self.metric = jnp.asarray(Jmetric / J[:, :, None, None])
        self.Jmetric = jnp.asarray(Jmetric)
        self.normal = jnp.asarray(normal)
        self.sJ = jnp.asarray(sJ)
        self.sMJ = jnp.asarray(sMJ)
        self.vMJI = jnp.asarray(vMJI)
        self.vmap_minus = vmapM
        self.elem_plus = elem_plus
        self.node_plus = node_plus
        self.elemtobndy = np.asarray(topo.elemtobndy)
        self.D = jnp.asarray(D)
        self.omega = jnp.asarray(w)
        self.weights = jnp.asarray(wvol)
        self._x_np = x
        self._Jmetric_np = Jmetric
        logger.info(
            "grid: dim=%d N=%d elements=%d (+%d ghost) on rank %d",
            self.dim,
            self.N,
            nreal,
            self.nelem - nreal,
            topo.rank,
        )

    @staticmethod
    def _tensor_weights(w: np.ndarray, dim: int) -> np.ndarray:
        out = np.ones(1)
        for _ in range(dim):
            # first axis fastest
            out = np.kron(w, out)
        return out

    def _reference_nodes(self, r: np.ndarray) -> np.ndarray:
        grids = np.meshgrid(*([r] * self.dim), indexing="ij")
        # meshgrid 'ij' gives axes (xi_0, xi_1, ...); flip to C-order (k, j, i)
        return np.stack([g.transpose(tuple(range(self.dim))[::-1]).reshape(-1) for g in grids], axis=-1)

    def _nodal_coordinates(self, r: np.ndarray, meshwarp) -> np.ndarray:
        ref = self._reference_nodes(r)  # (Np, dim)
        vertices = self.topology.elemtocoord  # (nelem, 2**dim, dim)
        shape_fns = np.ones((self.Np, 2**self.dim))
        for v in range(2**self.dim):
            for d in range(self.dim):
                bit = (v >> d) & 1
                shape_fns[:, v] *= 0.5 * (1 + ref[:, d]) if bit else 0.5 * (1 - ref[:, d])
        x = np.einsum("nv,evd->ned", shape_fns, vertices)
        x3 = np.zeros((self.Np, x.shape[1], 3))
        x3[..., : self.dim] = x
        if meshwarp is not None:
            wx, wy, wz = meshwarp(x3[..., 0], x3[..., 1], x3[..., 2])
            x3 = np.stack([np.asarray(wx), np.asarray(wy), np.asarray(wz)], axis=-1)
            if self.dim == 2:
                x3[..., 2] = 0.0
        return x3

    def _metric_terms(self, D: np.ndarray, x: np.ndarray):
        dim = self.dim
        dx = np.stack([apply_1d_operator(D, x, a, dim) for a in range(dim)], axis=2)
        # dx[n, e, a, m] = d x_m / d xi_a
        Jm = np.zeros((self.Np, x.shape[1], dim, 3))
        if dim == 2:
            Jm[:, :, 0, 0] = dx[:, :, 1, 1]
            Jm[:, :, 0, 1] = -dx[:, :, 1, 0]
            Jm[:, :, 1, 0] = -dx[:, :, 0, 1]
            Jm[:, :, 1, 1] = dx[:, :, 0, 0]
            J = dx[:, :, 0, 0] * dx[:, :, 1, 1] - dx[:, :, 1, 0] * dx[:, :, 0, 1]
        else:
            for a in range(3):
                b, c = (a + 1) % 3, (a + 2) % 3
                for m in range(3):
                    m1, m2 = (m + 1) % 3, (m + 2) % 3
                    t_b = dx[:, :, b, m1] * x[:, :, m2]
                    t_c = dx[:, :, c, m1] * x[:, :, m2]
                    Jm[:, :, a, m] = apply_1d_operator(D, t_b, c, dim) - apply_1d_operator(
                        D, t_c, b, dim
                    )
            J = np.einsum("nem,nem->ne", dx[:, :, 0, :], Jm[:, :, 0, :])
        return Jm, J

    # diagnostics -------------------------------------------------------
    def metric_identity_residual(self) -> float:
        """``max |sum_a D_a (J dxi_a/dx_m)|`` over real elements and ``m``."""

        nreal = self.nrealelem
        total = np.zeros((self.Np, nreal, 3))
        for a in range(self.dim):
            total += apply_1d_operator(self._D_np, self._Jmetric_np[:, :nreal, a, :], a, self.dim)
        return float(np.max(np.abs(total)))

    def min_node_distance(self) -> float:
        """Smallest physical distance between neighbouring nodes (real elements)."""

        nreal = self.nrealelem
        x = self._x_np[:, :nreal].reshape((self.Nq,) * self.dim + (nreal, 3))
        dmin = np.inf
        for a in range(self.dim):
            ax = self.dim - 1 - a
            diff = np.diff(x, axis=ax)
            dmin = min(dmin, float(np.min(np.linalg.norm(diff, axis=-1))))
        return dmin

    def volume(self) -> float:
        """Measure of the real elements on this rank (local sum)."""

        return float(jnp.sum(self.MJ[:, : self.nrealelem]))
