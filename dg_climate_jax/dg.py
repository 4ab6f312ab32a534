"""Discontinuous Galerkin spatial operator.

Evaluates ``dQ/dt = L(Q, t)`` for any :class:`~dg_climate_jax.balance_law.BalanceLaw`
on a :class:`~dg_climate_jax.grid.SpectralElementGrid`:

* optional gradient pass (BR1): gradient argument, DG gradient with central
  traces, gradient flux, halo exchange;
* optional hyperdiffusion pass: gradient of the Laplacian argument, DG
  divergence, exchange, DG gradient of the Laplacian, post transform, exchange;
* strong-form volume divergence of first- and second-order fluxes, or flux
  differencing with a two-point flux when the first-order policy asks for it;
* surface lift ``vMJI * sMJ * (F- . n - F*)`` accumulated with scatter-add.

The compute kernels between exchanges are jitted; exchanges happen on the host.
"""
from __future__ import annotations

import logging

import jax
import jax.numpy as jnp
import numpy as np

from .balance_law import FIRST_ORDER, GRADIENT, SECOND_ORDER, BalanceLaw, RemainderBalanceLaw
from .errors import ConfigurationError
from .grid import SpectralElementGrid, apply_1d_operator
from .numerical_fluxes import (
    CentralNumericalFluxDivergence,
    CentralNumericalFluxGradient,
    CentralNumericalFluxHigherOrder,
    CentralNumericalFluxSecondOrder,
    NumericalFluxFirstOrder,
    RusanovNumericalFlux,
    normal_dot,
)
from .state import DistributedState
from .variables import StateKind, VariableLayout

__all__ = ["DGModel", "remainder_dg_model"]

logger = logging.getLogger(__name__)


def _points(data):
    """(Np, nvar, nelem) -> (Np, nelem, nvar)."""

    return jnp.moveaxis(data, 1, 2)


def _nodal(points):
    return jnp.moveaxis(points, 2, 1)


class DGModel:
    """DG right-hand side of a balance law on a grid.

    Parameters
    ----------
    balance_law : BalanceLaw
    grid : SpectralElementGrid
    numerical_flux_first_order : NumericalFluxFirstOrder, optional
        Defaults to :class:`RusanovNumericalFlux`.
    numerical_flux_second_order, numerical_flux_gradient : optional
        Central policies by default.
    state_auxiliary : DistributedState, optional
        Reuse an existing auxiliary state instead of initialising one.
    """

    def __init__(
        self,
        balance_law: BalanceLaw,
        grid: SpectralElementGrid,
        numerical_flux_first_order: NumericalFluxFirstOrder | None = None,
        numerical_flux_second_order=None,
        numerical_flux_gradient=None,
        state_auxiliary: DistributedState | None = None,
    ):
        self.balance_law = balance_law
        self.grid = grid
        self.numerical_flux_first_order = (
            RusanovNumericalFlux() if numerical_flux_first_order is None else numerical_flux_first_order
        )
        self.numerical_flux_second_order = (
            CentralNumericalFluxSecondOrder() if numerical_flux_second_order is None else numerical_flux_second_order
        )
        self.numerical_flux_gradient = (
            CentralNumericalFluxGradient() if numerical_flux_gradient is None else numerical_flux_gradient
        )
        self.numerical_flux_divergence = CentralNumericalFluxDivergence()
        self.numerical_flux_higher_order = CentralNumericalFluxHigherOrder()

        self.layouts = {kind: balance_law.vars_state(kind) for kind in StateKind}
        self._tags = grid.topology.boundary_tags
        self._face_index()
        self._pair_tables()

        if state_auxiliary is None:
            state_auxiliary = self._init_state_auxiliary()
        elif state_auxiliary.layout.size != self.layouts[StateKind.AUXILIARY].size:
            raise ConfigurationError("auxiliary state does not match the balance law's auxiliary layout")
        self.state_auxiliary = state_auxiliary

        self._gradient_flux = DistributedState.zeros(grid, self.layouts[StateKind.GRADIENT_FLUX])
        self._grad_lap = DistributedState.zeros(grid, _vector_layout(self.layouts[StateKind.GRADIENT_LAPLACIAN]))
        self._lap = DistributedState.zeros(grid, self.layouts[StateKind.GRADIENT_LAPLACIAN])
        self._hyperdiffusive = DistributedState.zeros(grid, self.layouts[StateKind.HYPERDIFFUSIVE])

        self._jit_gradient = jax.jit(self._gradient_pass)
        self._jit_grad_lap = jax.jit(self._grad_lap_pass)
        self._jit_divergence = jax.jit(self._divergence_pass)
        self._jit_hyper = jax.jit(self._hyperdiffusive_pass)
        self._jit_tendency = jax.jit(self._tendency)

    # setup ------------------------------------------------------------
    def _face_index(self):
        g = self.grid
        nreal = g.nrealelem
        self._nodeM = np.broadcast_to(g.vmap_minus[:, :, None], (g.Nfp, g.nface, nreal))
        self._elemM = np.broadcast_to(np.arange(nreal)[None, None, :], (g.Nfp, g.nface, nreal))
        self._nodeP = g.node_plus
        self._elemP = g.elem_plus
        bndy = np.broadcast_to(g.elemtobndy[None, :, :], (g.Nfp, g.nface, nreal))
        self._masks = {tag: jnp.asarray(bndy == tag) for tag in self._tags}
        self._lift = (g.vMJI * g.sMJ)[..., None]
        self._nreal = nreal

    def _pair_tables(self):
        g = self.grid
        idx = np.arange(g.Np).reshape((g.Nq,) * g.dim)
        self._pairs = []
        self._Drows = []
        D = np.asarray(g.D)
        for a in range(g.dim):
            ax = g.dim - 1 - a
            ia = np.indices(idx.shape)[ax].reshape(-1)  # xi_a index of node n
            pair = np.empty((g.Np, g.Nq), dtype=np.int64)
            for b in range(g.Nq):
                moved = np.take(idx, b, axis=ax)
                moved = np.expand_dims(moved, ax)
                pair[:, b] = np.broadcast_to(moved, idx.shape).reshape(-1)
            self._pairs.append(pair)
            self._Drows.append(jnp.asarray(D[ia, :]))

    def _geometry_views(self):
        g = self.grid
        return {"coord": g.coords, "J": g.J}

    def _init_state_auxiliary(self) -> DistributedState:
        layout = self.layouts[StateKind.AUXILIARY]
        aux = DistributedState.zeros(self.grid, layout)
        if layout.size:
            views = layout.unpack(_points(aux.data))
            views = self.balance_law.init_state_auxiliary(views, self._geometry_views())
            aux.set_from(views)
            aux.exchange()
        return aux

    def init_ode_state(self, t=0.0) -> DistributedState:
        """Prognostic state initialised by the balance law at time ``t``."""

        layout = self.layouts[StateKind.PROGNOSTIC]
        Q = DistributedState.zeros(self.grid, layout)
        views = layout.unpack(_points(Q.data))
        aux_views = self.layouts[StateKind.AUXILIARY].unpack(_points(self.state_auxiliary.data))
        views = self.balance_law.init_state_prognostic(views, aux_views, self.grid.coords, t)
        Q.set_from(views)
        Q.exchange()
        return Q

    def new_state(self, kind: StateKind = StateKind.PROGNOSTIC) -> DistributedState:
        return DistributedState.zeros(self.grid, self.layouts[kind])

    # traces -----------------------------------------------------------
    def _traces(self, pts):
        """Interior/exterior face traces of a pointwise array ``(Np, nelem, nv)``."""

        return pts[self._nodeM, self._elemM], pts[self._nodeP, self._elemP]

    def _lift_add(self, volume, contrib):
        """Scatter-add a face contribution ``(Nfp, nface, nreal, ...)`` into ``volume``."""

        lift = self._lift.reshape(self._lift.shape + (1,) * (contrib.ndim - 4))
        return volume.at[self._nodeM, self._elemM].add(lift * contrib)

    def _boundary_exterior(self, kind, qM, auxM, qP, t):
        law = self.balance_law
        normal = self.grid.normal
        for tag, mask in self._masks.items():
            qB = law.packed_boundary_state(kind, tag, qM, auxM, normal, t)
            qP = jnp.where(mask[..., None], qB, qP)
        return qP

    def _volume_gradient(self, g):
        """``grad g`` on real elements from element-local derivatives."""

        grid = self.grid
        nreal = self._nreal
        g = g[:, :nreal]
        metric = grid.metric[:, :nreal]
        out = 0.0
        for a in range(grid.dim):
            dg = apply_1d_operator(grid.D, g, a, grid.dim)
            out = out + dg[..., None] * metric[:, :, None, a, :]
        return out

    def _volume_divergence(self, F, nelem=None):
        """Strong-form ``div F`` for ``F`` of shape (Np, n, nv, 3)."""

        grid = self.grid
        n = F.shape[1]
        Jm = grid.Jmetric[:, :n]
        J = grid.J[:, :n]
        out = 0.0
        for a in range(grid.dim):
            contravariant = jnp.einsum("nevd,ned->nev", F, Jm[:, :, a, :])
            out = out + apply_1d_operator(grid.D, contravariant, a, grid.dim)
        return out / J[..., None]

    def _flux_differencing(self, q, aux, t):
        """``(1/J) sum_a sum_b 2 D_ab F#(q_n, q_b) . avg(J grad xi_a)``."""

        grid = self.grid
        law = self.balance_law
        kind = self.numerical_flux_first_order.volume_flux
        nreal = self._nreal
        q = q[:, :nreal]
        aux = aux[:, :nreal]
        Jm = grid.Jmetric[:, :nreal]
        out = 0.0
        for a in range(grid.dim):
            pair = self._pairs[a]
            q2 = q[pair]  # (Np, Nq, nreal, nv)
            a2 = aux[pair]
            f = law.packed_two_point_flux(kind, q[:, None], aux[:, None], q2, a2, t)
            avg = 0.5 * (Jm[:, None, :, a, :] + Jm[pair][:, :, :, a, :])
            fa = jnp.einsum("nbevd,nbed->nbev", f, avg)
            out = out + 2.0 * jnp.einsum("nb,nbev->nev", self._Drows[a], fa)
        return out / grid.J[:, :nreal, None]

    # passes -----------------------------------------------------------
    def _gradient_pass(self, qdata, auxdata, t):
        law = self.balance_law
        grid = self.grid
        q, aux = _points(qdata), _points(auxdata)
        g = law.packed_gradient_argument(q, aux, t)
        grad = self._volume_gradient(g)
        gM, gP = self._traces(g)
        qM, qP = self._traces(q)
        auxM, auxP = self._traces(aux)
        if self._masks:
            qB = self._boundary_exterior(GRADIENT, qM, auxM, qP, t)
            gB = law.packed_gradient_argument(qB, auxM, t)
            bmask = self._any_boundary()
            gP = jnp.where(bmask[..., None], gB, gP)
        gstar = self.numerical_flux_gradient.trace(gM, gP)
        grad = self._lift_add(grad, (gstar - gM)[..., None] * grid.normal[..., None, :])
        gradflux = law.packed_gradient_flux(grad, q[:, : self._nreal], aux[:, : self._nreal], t)
        return _nodal(gradflux)

    def _any_boundary(self):
        mask = None
        for m in self._masks.values():
            mask = m if mask is None else mask | m
        return mask

    def _grad_lap_pass(self, qdata, auxdata, t):
        law = self.balance_law
        grid = self.grid
        q, aux = _points(qdata), _points(auxdata)
        L = law.packed_laplacian_argument(q, aux, t)
        grad = self._volume_gradient(L)
        LM, LP = self._traces(L)
        if self._masks:
            LP = jnp.where(self._any_boundary()[..., None], LM, LP)
        grad = self._lift_add(grad, (self.numerical_flux_gradient.trace(LM, LP) - LM)[..., None] * grid.normal[..., None, :])
        return _nodal(grad.reshape(grad.shape[:2] + (-1,)))

    def _divergence_pass(self, graddata):
        grid = self.grid
        G = _points(graddata)
        G = G.reshape(G.shape[:2] + (-1, 3))
        div = self._volume_divergence(G[:, : self._nreal])
        GM, GP = self._traces(G)
        if self._masks:
            GP = jnp.where(self._any_boundary()[..., None, None], GM, GP)
        fstar = self.numerical_flux_divergence.normal_flux(GM, GP, grid.normal)
        div = self._lift_add(div, fstar - normal_dot(GM, grid.normal))
        return _nodal(div)

    def _hyperdiffusive_pass(self, lapdata, qdata, auxdata, t):
        law = self.balance_law
        grid = self.grid
        lap = _points(lapdata)
        q, aux = _points(qdata), _points(auxdata)
        grad = self._volume_gradient(lap)
        lM, lP = self._traces(lap)
        if self._masks:
            lP = jnp.where(self._any_boundary()[..., None], lM, lP)
        lstar = self.numerical_flux_higher_order.trace(lM, lP)
        grad = self._lift_add(grad, (lstar - lM)[..., None] * grid.normal[..., None, :])
        hyper = law.packed_post_gradient_laplacian(grad, q[:, : self._nreal], aux[:, : self._nreal], t)
        return _nodal(hyper)

    def _tendency(self, qdata, auxdata, gfdata, hyperdata, t):
        law = self.balance_law
        grid = self.grid
        nreal = self._nreal
        q, aux = _points(qdata), _points(auxdata)
        gf, hyper = _points(gfdata), _points(hyperdata)
        qr, auxr = q[:, :nreal], aux[:, :nreal]
        second = law.has_second_order

        rhs = law.packed_source(qr, auxr, t)
        volume_flux = None
        if self.numerical_flux_first_order.volume_flux is not None:
            rhs = rhs - self._flux_differencing(q, aux, t)
        else:
            volume_flux = law.packed_flux_first_order(qr, auxr, t)
        if second:
            f2 = law.packed_flux_second_order(qr, gf[:, :nreal], hyper[:, :nreal], auxr, t)
            volume_flux = f2 if volume_flux is None else volume_flux + f2
        if volume_flux is not None:
            rhs = rhs - self._volume_divergence(volume_flux)

        normal = grid.normal
        qM, qP = self._traces(q)
        auxM, auxP = self._traces(aux)
        qP1 = self._boundary_exterior(FIRST_ORDER, qM, auxM, qP, t) if self._masks else qP
        # boundary exterior aux equals the interior aux (elem_plus is the element itself)
        fstar = law.numerical_flux_first_order(self.numerical_flux_first_order, normal, qM, auxM, qP1, auxP, t)
        fM = normal_dot(law.packed_flux_first_order(qM, auxM, t), normal)
        jump = fM - fstar

        if second:
            gfM, gfP = self._traces(gf)
            hM, hP = self._traces(hyper)
            qP2 = self._boundary_exterior(SECOND_ORDER, qM, auxM, qP, t) if self._masks else qP
            if self._masks:
                for tag, mask in self._masks.items():
                    gB = law.packed_boundary_gradient_flux(tag, gfM, qM, auxM, normal, t)
                    gfP = jnp.where(mask[..., None], gB, gfP)
                hP = jnp.where(self._any_boundary()[..., None], hM, hP)
            f2M = law.packed_flux_second_order(qM, gfM, hM, auxM, t)
            f2P = law.packed_flux_second_order(qP2, gfP, hP, auxP, t)
            jump = jump + normal_dot(f2M, normal) - self.numerical_flux_second_order.normal_flux(f2M, f2P, normal)

        rhs = self._lift_add(rhs, jump)
        out = jnp.zeros((grid.Np, qdata.shape[2], qdata.shape[1]), dtype=rhs.dtype)
        out = out.at[:, :nreal].set(rhs)
        return _nodal(out)

    # evaluation -------------------------------------------------------
    def _check(self, state: DistributedState, name: str):
        nvar = self.layouts[StateKind.PROGNOSTIC].size
        if state.layout.size != nvar:
            raise ConfigurationError(
                f"{name} holds {state.layout.size} variables but {type(self.balance_law).__name__} declares {nvar}"
            )
        if state.data.shape != (self.grid.Np, nvar, self.grid.nelem):
            raise ConfigurationError(f"{name} has shape {state.data.shape}, expected {(self.grid.Np, nvar, self.grid.nelem)}")

    def __call__(self, tendency: DistributedState, state: DistributedState, t, increment: bool = False):
        """Write ``L(state, t)`` into ``tendency`` (added when ``increment``)."""

        self._check(state, "state")
        self._check(tendency, "tendency")
        state.exchange()
        aux = self.state_auxiliary.data
        t = jnp.asarray(t, dtype=state.data.dtype)
        law = self.balance_law

        if law.num_state(StateKind.GRADIENT) > 0:
            gf = self._jit_gradient(state.data, aux, t)
            self._gradient_flux.data = self._gradient_flux.data.at[:, :, : self._nreal].set(gf)
            self._gradient_flux.exchange()

        if law.has_hyperdiffusion:
            gl = self._jit_grad_lap(state.data, aux, t)
            self._grad_lap.data = self._grad_lap.data.at[:, :, : self._nreal].set(gl)
            self._grad_lap.exchange()
            lap = self._jit_divergence(self._grad_lap.data)
            self._lap.data = self._lap.data.at[:, :, : self._nreal].set(lap)
            self._lap.exchange()
            hyper = self._jit_hyper(self._lap.data, state.data, aux, t)
            self._hyperdiffusive.data = self._hyperdiffusive.data.at[:, :, : self._nreal].set(hyper)
            self._hyperdiffusive.exchange()

        rhs = self._jit_tendency(state.data, aux, self._gradient_flux.data, self._hyperdiffusive.data, t)
        tendency.data = tendency.data + rhs if increment else rhs
        return tendency

    dg = __call__

    def tendency(self, state: DistributedState, t) -> DistributedState:
        out = state.similar()
        self(out, state, t)
        return out

    def grad_auxiliary_state(self, source: str, target: str) -> None:
        """Element-local gradient of auxiliary scalar ``source`` into vector ``target``."""

        layout = self.layouts[StateKind.AUXILIARY]
        if source not in layout or target not in layout:
            raise ConfigurationError(f"auxiliary layout lacks {source!r} or {target!r}")
        if layout.is_vector(source) or not layout.is_vector(target):
            raise ConfigurationError("grad_auxiliary_state maps a scalar to a vector variable")
        grid = self.grid
        aux = self.state_auxiliary
        g = aux[source][..., None]
        grad = 0.0
        for a in range(grid.dim):
            d = apply_1d_operator(grid.D, g, a, grid.dim)
            grad = grad + d * grid.metric[:, :, a, :]
        views = layout.unpack(_points(aux.data))
        views[target] = grad
        aux.set_from(views)

    def courant(self, state: DistributedState, dt: float, t=0.0) -> float:
        """Acoustic Courant number ``dt * max(c) / min node distance``."""

        law = self.balance_law
        q, aux = _points(state.realdata), _points(self.state_auxiliary.data[:, :, : self._nreal])
        c = 0.0
        for d in range(3):
            n = jnp.zeros(q.shape[:-1] + (3,), dtype=q.dtype).at[..., d].set(1.0)
            c = jnp.maximum(c, jnp.max(law.packed_wavespeed(n, q, aux, t)))
        cmax = self.grid.topology.process_group.allreduce(float(c), op="max")
        dmin = self.grid.topology.process_group.allreduce(self.grid.min_node_distance(), op="min")
        return dt * cmax / dmin


def _vector_layout(layout: VariableLayout) -> VariableLayout:
    """Layout holding the gradient (three slots) of every slot of ``layout``."""

    return VariableLayout(tuple((f"grad_{n}_{i}", 3) for n, k in layout.fields for i in range(k)))


def remainder_dg_model(
    dg: DGModel,
    subs,
    numerical_flux_first_order=None,
    sub_numerical_fluxes=None,
) -> DGModel:
    """DG model of ``dg.balance_law - sum(subs)`` sharing ``dg``'s grid and aux state."""

    law = RemainderBalanceLaw(
        dg.balance_law,
        tuple(subs),
        None if sub_numerical_fluxes is None else tuple(sub_numerical_fluxes),
    )
    return DGModel(
        law,
        dg.grid,
        dg.numerical_flux_first_order if numerical_flux_first_order is None else numerical_flux_first_order,
        dg.numerical_flux_second_order,
        dg.numerical_flux_gradient,
        state_auxiliary=dg.state_auxiliary,
    )
