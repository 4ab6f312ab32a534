"""Named variable layouts for the state kinds of a balance law."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Mapping

import jax.numpy as jnp

__all__ = ["StateKind", "VariableLayout", "scalar", "vector"]


class StateKind(enum.Enum):
    PROGNOSTIC = "prognostic"
    AUXILIARY = "auxiliary"
    GRADIENT = "gradient"
    GRADIENT_FLUX = "gradient_flux"
    GRADIENT_LAPLACIAN = "gradient_laplacian"
    HYPERDIFFUSIVE = "hyperdiffusive"
    ENTROPY = "entropy"


SCALAR = 1
VECTOR = 3


def scalar(name: str) -> tuple[str, int]:
    return (name, SCALAR)


def vector(name: str) -> tuple[str, int]:
    """A three-component variable; 2D runs keep a zero third component."""

    return (name, VECTOR)


@dataclass(frozen=True)
class VariableLayout:
    """Ordered named variables; scalars take one slot, vectors three.

    Views are unpacked from the trailing axis of an array: a scalar becomes an
    array without that axis, a vector keeps a trailing axis of length 3.
    """

    fields: tuple[tuple[str, int], ...] = ()

    @classmethod
    def of(cls, *fields: tuple[str, int] | str) -> "VariableLayout":
        out = []
        for f in fields:
            out.append(scalar(f) if isinstance(f, str) else (str(f[0]), int(f[1])))
        names = [n for n, _ in out]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate variable names in {names}")
        return cls(tuple(out))

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(n for n, _ in self.fields)

    @property
    def size(self) -> int:
        return sum(k for _, k in self.fields)

    def __len__(self) -> int:
        return self.size

    def __contains__(self, name: str) -> bool:
        return name in self.names

    def slices(self) -> dict[str, slice]:
        out = {}
        i = 0
        for n, k in self.fields:
            out[n] = slice(i, i + k)
            i += k
        return out

    def is_vector(self, name: str) -> bool:
        return dict(self.fields)[name] == VECTOR

    def component_names(self) -> tuple[str, ...]:
        """Flat per-slot names (``"rhou[0]"`` etc. for vectors)."""

        out = []
        for n, k in self.fields:
            if k == SCALAR:
                out.append(n)
            else:
                out.extend(f"{n}[{c}]" for c in range(k))
        return tuple(out)

    def unpack(self, array) -> dict:
        views = {}
        for (n, k), sl in zip(self.fields, self.slices().values()):
            views[n] = array[..., sl.start] if k == SCALAR else array[..., sl]
        return views

    def pack(self, views: Mapping, shape: tuple[int, ...] | None = None, dtype=None):
        """Stack named views along a trailing axis; missing names are zero.

        ``shape`` (the leading shape) is only needed when no view is given.
        """

        given = [jnp.asarray(views[n]) for n, _ in self.fields if n in views]
        if shape is None:
            if not given:
                raise ValueError("cannot infer the leading shape of an empty pack")
            n0, k0 = next((n, k) for n, k in self.fields if n in views)
            v0 = jnp.asarray(views[n0])
            shape = v0.shape if k0 == SCALAR else v0.shape[:-1]
        if dtype is None:
            dtype = jnp.result_type(*given) if given else jnp.zeros(()).dtype
        parts = []
        for n, k in self.fields:
            if n in views:
                v = jnp.asarray(views[n], dtype=dtype)
                if k == SCALAR:
                    v = v[..., None]
                parts.append(jnp.broadcast_to(v, tuple(shape) + (k,)))
            else:
                parts.append(jnp.zeros(tuple(shape) + (k,), dtype))
        if not parts:
            return jnp.zeros(tuple(shape) + (0,), dtype)
        return jnp.concatenate(parts, axis=-1)
