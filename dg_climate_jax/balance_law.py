"""Balance-law interface implemented by every physical model.

A balance law describes ``dq/dt + div(F1(q) + F2(q, grad g(q))) = S(q)``. The DG
operator is written once against this interface; models never see element or
face indexing. Every callback is vectorized: it receives dictionaries of named
views (scalars shaped like the node set, vectors with a trailing axis of 3)
and returns dictionaries of the same kind.

Fluxes are returned per prognostic variable with a trailing direction axis of
length 3: a scalar variable's flux has shape ``(..., 3)``, a vector variable's
``(..., 3, 3)`` indexed ``[component, direction]``. Missing entries are zero.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Mapping, Sequence

import jax.numpy as jnp

from .errors import ConfigurationError
from .variables import SCALAR, StateKind, VariableLayout

__all__ = ["BalanceLaw", "RemainderBalanceLaw", "pack_flux", "FIRST_ORDER", "GRADIENT", "SECOND_ORDER"]

# boundary_state kinds
FIRST_ORDER = "first_order"
GRADIENT = "gradient"
SECOND_ORDER = "second_order"


def pack_flux(layout: VariableLayout, flux: Mapping, shape: tuple[int, ...], dtype) -> jnp.ndarray:
    """Stack a flux dictionary into an array of shape ``shape + (nvar, 3)``."""

    parts = []
    for name, k in layout.fields:
        if name in flux:
            v = jnp.asarray(flux[name], dtype=dtype)
            if k == SCALAR:
                v = v[..., None, :]
            parts.append(jnp.broadcast_to(v, tuple(shape) + (k, 3)))
        else:
            parts.append(jnp.zeros(tuple(shape) + (k, 3), dtype))
    if not parts:
        return jnp.zeros(tuple(shape) + (0, 3), dtype)
    return jnp.concatenate(parts, axis=-2)


def unpack_flux(layout: VariableLayout, array) -> dict:
    out = {}
    for (name, k), sl in zip(layout.fields, layout.slices().values()):
        out[name] = array[..., sl.start, :] if k == SCALAR else array[..., sl, :]
    return out


class BalanceLaw(abc.ABC):
    """Capability set of a physical model.

    Subclasses declare their variable layouts through :meth:`vars_state` and
    override the callbacks they need; the defaults describe a law without that
    term (zero flux, zero source, extrapolating boundaries).
    """

    # layouts ----------------------------------------------------------
    @abc.abstractmethod
    def vars_state(self, kind: StateKind) -> VariableLayout:
        """Variable layout of ``kind``; empty for kinds the law does not use."""

    def num_state(self, kind: StateKind) -> int:
        return self.vars_state(kind).size

    @property
    def has_second_order(self) -> bool:
        return self.num_state(StateKind.GRADIENT) > 0 or self.num_state(StateKind.GRADIENT_LAPLACIAN) > 0

    @property
    def has_hyperdiffusion(self) -> bool:
        return self.num_state(StateKind.GRADIENT_LAPLACIAN) > 0

    # initialisation ---------------------------------------------------
    def init_state_auxiliary(self, aux: dict, geom: dict) -> dict:
        """Fill auxiliary views from geometry (``geom["coord"]``, ``geom["J"]``)."""

        return aux

    def init_state_prognostic(self, state: dict, aux: dict, coords, t) -> dict:
        raise NotImplementedError(f"{type(self).__name__} has no prognostic initial condition")

    # fluxes and sources -----------------------------------------------
    def flux_first_order(self, state: dict, aux: dict, t) -> dict:
        return {}

    def compute_gradient_argument(self, state: dict, aux: dict, t) -> dict:
        return {}

    def compute_gradient_flux(self, gradient: dict, state: dict, aux: dict, t) -> dict:
        return {}

    def compute_gradient_laplacian_argument(self, state: dict, aux: dict, t) -> dict:
        return {}

    def transform_post_gradient_laplacian(self, gradient_laplacian: dict, state: dict, aux: dict, t) -> dict:
        return {}

    def flux_second_order(self, state: dict, gradient_flux: dict, hyperdiffusive: dict, aux: dict, t) -> dict:
        return {}

    def source(self, state: dict, aux: dict, t) -> dict:
        return {}

    def wavespeed(self, normal, state: dict, aux: dict, t):
        return jnp.zeros(normal.shape[:-1], dtype=normal.dtype)

    # boundaries -------------------------------------------------------
    def boundary_state(self, kind: str, tag: int, state: dict, aux: dict, normal, t) -> dict:
        """Exterior state at a boundary face with tag ``tag``.

        ``kind`` is one of ``"first_order"``, ``"gradient"`` or
        ``"second_order"`` and selects which pass asks. The default mirrors the
        interior state, which makes every boundary flux consistent.
        """

        return dict(state)

    def boundary_gradient_flux(self, tag: int, gradient_flux: dict, state: dict, aux: dict, normal, t) -> dict:
        return dict(gradient_flux)

    # two-point fluxes -------------------------------------------------
    def two_point_flux(self, kind: str, state1: dict, aux1: dict, state2: dict, aux2: dict, t) -> dict:
        """Symmetric two-point volume flux; only ``"central"`` is generic."""

        if kind != "central":
            raise ConfigurationError(f"{type(self).__name__} has no {kind!r} two-point flux")
        f1 = self.flux_first_order(state1, aux1, t)
        f2 = self.flux_first_order(state2, aux2, t)
        return {k: 0.5 * (f1[k] + f2[k]) for k in f1}

    def numerical_flux_first_order(self, numerical_flux, normal, qM, auxM, qP, auxP, t):
        """Normal numerical flux on packed face traces, shape ``(..., nvar)``."""

        return numerical_flux.normal_flux(self, normal, qM, auxM, qP, auxP, t)

    # entropy ------------------------------------------------------------
    def state_to_entropy(self, state: dict, aux: dict):
        """Mathematical entropy density ``eta(q)``."""

        raise ConfigurationError(f"{type(self).__name__} does not define an entropy")

    def state_to_entropy_variables(self, state: dict, aux: dict) -> dict:
        """Entropy variables ``d eta / d q`` in the ``ENTROPY`` layout."""

        raise ConfigurationError(f"{type(self).__name__} does not define entropy variables")

    def packed_state_to_entropy(self, q, aux):
        eta = self.state_to_entropy(self._views(StateKind.PROGNOSTIC, q), self._views(StateKind.AUXILIARY, aux))
        return jnp.broadcast_to(jnp.asarray(eta, dtype=q.dtype), q.shape[:-1])

    def packed_state_to_entropy_variables(self, q, aux):
        v = self.state_to_entropy_variables(
            self._views(StateKind.PROGNOSTIC, q), self._views(StateKind.AUXILIARY, aux)
        )
        return self.vars_state(StateKind.ENTROPY).pack(v, shape=q.shape[:-1], dtype=q.dtype)

    # packed evaluation used by the DG operator -------------------------
    def _views(self, kind: StateKind, array) -> dict:
        return self.vars_state(kind).unpack(array)

    def packed_flux_first_order(self, q, aux, t):
        layout = self.vars_state(StateKind.PROGNOSTIC)
        f = self.flux_first_order(self._views(StateKind.PROGNOSTIC, q), self._views(StateKind.AUXILIARY, aux), t)
        return pack_flux(layout, f, q.shape[:-1], q.dtype)

    def packed_two_point_flux(self, kind, q1, aux1, q2, aux2, t):
        layout = self.vars_state(StateKind.PROGNOSTIC)
        f = self.two_point_flux(
            kind,
            self._views(StateKind.PROGNOSTIC, q1),
            self._views(StateKind.AUXILIARY, aux1),
            self._views(StateKind.PROGNOSTIC, q2),
            self._views(StateKind.AUXILIARY, aux2),
            t,
        )
        shape = jnp.broadcast_shapes(q1.shape, q2.shape)[:-1]
        return pack_flux(layout, f, shape, q1.dtype)

    def packed_flux_second_order(self, q, gradflux, hyper, aux, t):
        layout = self.vars_state(StateKind.PROGNOSTIC)
        f = self.flux_second_order(
            self._views(StateKind.PROGNOSTIC, q),
            self._views(StateKind.GRADIENT_FLUX, gradflux),
            self._views(StateKind.HYPERDIFFUSIVE, hyper),
            self._views(StateKind.AUXILIARY, aux),
            t,
        )
        return pack_flux(layout, f, q.shape[:-1], q.dtype)

    def packed_source(self, q, aux, t):
        s = self.source(self._views(StateKind.PROGNOSTIC, q), self._views(StateKind.AUXILIARY, aux), t)
        return self.vars_state(StateKind.PROGNOSTIC).pack(s, shape=q.shape[:-1], dtype=q.dtype)

    def packed_gradient_argument(self, q, aux, t):
        g = self.compute_gradient_argument(self._views(StateKind.PROGNOSTIC, q), self._views(StateKind.AUXILIARY, aux), t)
        return self.vars_state(StateKind.GRADIENT).pack(g, shape=q.shape[:-1], dtype=q.dtype)

    def packed_gradient_flux(self, grad, q, aux, t):
        # grad has shape (..., ngrad, 3)
        gl = self.vars_state(StateKind.GRADIENT)
        views = unpack_flux(gl, grad)
        out = self.compute_gradient_flux(
            views, self._views(StateKind.PROGNOSTIC, q), self._views(StateKind.AUXILIARY, aux), t
        )
        return self.vars_state(StateKind.GRADIENT_FLUX).pack(out, shape=q.shape[:-1], dtype=q.dtype)

    def packed_laplacian_argument(self, q, aux, t):
        g = self.compute_gradient_laplacian_argument(
            self._views(StateKind.PROGNOSTIC, q), self._views(StateKind.AUXILIARY, aux), t
        )
        return self.vars_state(StateKind.GRADIENT_LAPLACIAN).pack(g, shape=q.shape[:-1], dtype=q.dtype)

    def packed_post_gradient_laplacian(self, gradlap, q, aux, t):
        views = unpack_flux(self.vars_state(StateKind.GRADIENT_LAPLACIAN), gradlap)
        out = self.transform_post_gradient_laplacian(
            views, self._views(StateKind.PROGNOSTIC, q), self._views(StateKind.AUXILIARY, aux), t
        )
        return self.vars_state(StateKind.HYPERDIFFUSIVE).pack(out, shape=q.shape[:-1], dtype=q.dtype)

    def packed_wavespeed(self, normal, q, aux, t):
        ws = self.wavespeed(normal, self._views(StateKind.PROGNOSTIC, q), self._views(StateKind.AUXILIARY, aux), t)
        return jnp.broadcast_to(jnp.asarray(ws, dtype=q.dtype), q.shape[:-1])

    def packed_boundary_state(self, kind, tag, q, aux, normal, t):
        layout = self.vars_state(StateKind.PROGNOSTIC)
        out = self.boundary_state(kind, tag, layout.unpack(q), self._views(StateKind.AUXILIARY, aux), normal, t)
        return layout.pack(out, shape=q.shape[:-1], dtype=q.dtype)

    def packed_boundary_gradient_flux(self, tag, gradflux, q, aux, normal, t):
        layout = self.vars_state(StateKind.GRADIENT_FLUX)
        out = self.boundary_gradient_flux(
            tag,
            layout.unpack(gradflux),
            self._views(StateKind.PROGNOSTIC, q),
            self._views(StateKind.AUXILIARY, aux),
            normal,
            t,
        )
        return layout.pack(out, shape=q.shape[:-1], dtype=q.dtype)


def _subtract(main: dict, subs: Sequence[dict]) -> dict:
    out = dict(main)
    for s in subs:
        for k, v in s.items():
            out[k] = out[k] - v if k in out else -v
    return out


@dataclass(frozen=True, eq=False)
class RemainderBalanceLaw(BalanceLaw):
    """``main - sum(subs)``: the fast part of a multirate or IMEX split.

    Layouts, initial conditions, gradient passes and boundary states come from
    ``main``. Fluxes, sources and the first-order numerical flux are main's
    minus each sub's, so the remainder plus the subs reproduces the full
    operator exactly. Subs must share main's prognostic layout and read only
    auxiliary variables main provides.
    """

    main: BalanceLaw
    subs: tuple[BalanceLaw, ...] = field(default_factory=tuple)
    sub_numerical_fluxes: tuple | None = None

    def __post_init__(self):
        object.__setattr__(self, "subs", tuple(self.subs))
        prog = self.main.vars_state(StateKind.PROGNOSTIC)
        aux_names = set(self.main.vars_state(StateKind.AUXILIARY).names)
        for s in self.subs:
            if s.vars_state(StateKind.PROGNOSTIC) != prog:
                raise ConfigurationError(f"{type(s).__name__} does not share the prognostic layout of the main law")
            missing = set(s.vars_state(StateKind.AUXILIARY).names) - aux_names
            if missing:
                raise ConfigurationError(f"{type(s).__name__} needs auxiliary variables {sorted(missing)}")
            if s.has_second_order:
                raise ConfigurationError("sub-laws of a remainder cannot carry second-order terms")
        if self.sub_numerical_fluxes is not None and len(self.sub_numerical_fluxes) != len(self.subs):
            raise ConfigurationError("need one numerical flux per sub-law")

    def vars_state(self, kind):
        return self.main.vars_state(kind)

    def _sub_aux(self, sub: BalanceLaw, aux: dict) -> dict:
        return {n: aux[n] for n in sub.vars_state(StateKind.AUXILIARY).names}

    def init_state_auxiliary(self, aux, geom):
        return self.main.init_state_auxiliary(aux, geom)

    def init_state_prognostic(self, state, aux, coords, t):
        return self.main.init_state_prognostic(state, aux, coords, t)

    def flux_first_order(self, state, aux, t):
        return _subtract(
            self.main.flux_first_order(state, aux, t),
            [s.flux_first_order(state, self._sub_aux(s, aux), t) for s in self.subs],
        )

    def compute_gradient_argument(self, state, aux, t):
        return self.main.compute_gradient_argument(state, aux, t)

    def compute_gradient_flux(self, gradient, state, aux, t):
        return self.main.compute_gradient_flux(gradient, state, aux, t)

    def compute_gradient_laplacian_argument(self, state, aux, t):
        return self.main.compute_gradient_laplacian_argument(state, aux, t)

    def transform_post_gradient_laplacian(self, gradient_laplacian, state, aux, t):
        return self.main.transform_post_gradient_laplacian(gradient_laplacian, state, aux, t)

    def flux_second_order(self, state, gradient_flux, hyperdiffusive, aux, t):
        return self.main.flux_second_order(state, gradient_flux, hyperdiffusive, aux, t)

    def source(self, state, aux, t):
        return _subtract(
            self.main.source(state, aux, t),
            [s.source(state, self._sub_aux(s, aux), t) for s in self.subs],
        )

    def wavespeed(self, normal, state, aux, t):
        return self.main.wavespeed(normal, state, aux, t)

    def boundary_state(self, kind, tag, state, aux, normal, t):
        return self.main.boundary_state(kind, tag, state, aux, normal, t)

    def boundary_gradient_flux(self, tag, gradient_flux, state, aux, normal, t):
        return self.main.boundary_gradient_flux(tag, gradient_flux, state, aux, normal, t)

    def state_to_entropy(self, state, aux):
        return self.main.state_to_entropy(state, aux)

    def state_to_entropy_variables(self, state, aux):
        return self.main.state_to_entropy_variables(state, aux)

    def two_point_flux(self, kind, state1, aux1, state2, aux2, t):
        return _subtract(
            self.main.two_point_flux(kind, state1, aux1, state2, aux2, t),
            [
                s.two_point_flux(kind, state1, self._sub_aux(s, aux1), state2, self._sub_aux(s, aux2), t)
                for s in self.subs
            ],
        )

    def numerical_flux_first_order(self, numerical_flux, normal, qM, auxM, qP, auxP, t):
        total = self.main.numerical_flux_first_order(numerical_flux, normal, qM, auxM, qP, auxP, t)
        main_aux = self.main.vars_state(StateKind.AUXILIARY)
        for i, s in enumerate(self.subs):
            nf = numerical_flux if self.sub_numerical_fluxes is None else self.sub_numerical_fluxes[i]
            sub_aux = s.vars_state(StateKind.AUXILIARY)
            aM = sub_aux.pack(self._sub_aux(s, main_aux.unpack(auxM)), shape=auxM.shape[:-1], dtype=auxM.dtype)
            aP = sub_aux.pack(self._sub_aux(s, main_aux.unpack(auxP)), shape=auxP.shape[:-1], dtype=auxP.dtype)
            total = total - s.numerical_flux_first_order(nf, normal, qM, aM, qP, aP, t)
        return total
