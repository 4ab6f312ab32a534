"""Brick topologies partitioned along a space-filling curve.

Elements of a Cartesian brick are ordered along a Morton (Z-order) curve or
lexicographically and split into contiguous chunks, one per rank. Each rank
holds its own chunk (the real elements) followed by a one-element ghost layer
of face neighbours owned by other ranks. Ghosts are grouped by owning rank
and, within a rank, kept in curve order; send lists use the same order so
that a plain copy moves data between matching slots.
"""
from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from .errors import ConfigurationError
from .process_group import ProcessGroup, SerialProcessGroup

__all__ = ["BrickTopology", "morton_order"]

logger = logging.getLogger(__name__)


def _morton_key(index: Sequence[int], bits: int) -> int:
    key = 0
    dim = len(index)
    for b in range(bits):
        for d in range(dim):
            key |= ((int(index[d]) >> b) & 1) << (b * dim + d)
    return key


def morton_order(shape: Sequence[int]) -> np.ndarray:
    """Lexicographic element ids (first axis fastest) sorted along a Z-curve."""

    shape = tuple(int(n) for n in shape)
    bits = max(1, int(np.ceil(np.log2(max(shape)))) + 1)
    ids = np.arange(int(np.prod(shape)))
    cart = np.stack(np.unravel_index(ids, shape, order="F"), axis=-1)
    keys = np.array([_morton_key(c, bits) for c in cart], dtype=np.int64)
    return ids[np.argsort(keys, kind="stable")]


class BrickTopology:
    """Distributed 2D/3D brick of hexahedral (quadrilateral) elements.

    Parameters
    ----------
    process_group : ProcessGroup
        Externally created group; determines ``rank`` and ``size``.
    brickrange : sequence of 1D arrays
        Monotone node coordinates along each axis; axis ``d`` has
        ``len(brickrange[d]) - 1`` elements.
    periodicity : sequence of bool
    boundary : sequence of (int, int), optional
        Boundary tags of the low and high face of each axis. Periodic axes
        must carry ``(0, 0)`` and non-periodic axes positive tags. Defaults to
        ``(1, 1)`` on non-periodic axes.
    ordering : {"morton", "lexicographic"}

    Attributes
    ----------
    elemtoelem, elemtoface, elemtobndy : int arrays, shape (nface, nrealelem)
        Local neighbour element, neighbour face and boundary tag of each face
        of each real element. Boundary faces point back at the element itself
        with tag > 0.
    elemtocoord : float array, shape (nelem, 2**dim, dim)
        Vertex coordinates of real and ghost elements, first axis fastest.
    nabrtorank : int array
        Neighbouring ranks in increasing order.
    nabrtorecv, nabrtosend : list of slices
        Ranges into ``ghostelems`` / ``sendelems`` per neighbouring rank.
    sendelems : int array
        Local ids of real elements sent, grouped per neighbouring rank.
    """

    def __init__(
        self,
        process_group: ProcessGroup | None,
        brickrange: Sequence[Sequence[float]],
        periodicity: Sequence[bool] | None = None,
        boundary: Sequence[tuple[int, int]] | None = None,
        ordering: str = "morton",
    ):
        self.process_group = SerialProcessGroup() if process_group is None else process_group
        self.rank = self.process_group.rank
        self.size = self.process_group.size

        self.brickrange = tuple(np.asarray(r, dtype=np.float64) for r in brickrange)
        self.dim = len(self.brickrange)
        if self.dim not in (2, 3):
            raise ConfigurationError(f"bricks must be 2D or 3D, got {self.dim} axes")
        for d, r in enumerate(self.brickrange):
            if r.ndim != 1 or r.size < 2:
                raise ConfigurationError(f"axis {d} needs at least two node coordinates")
            if np.any(np.diff(r) <= 0):
                raise ConfigurationError(f"axis {d} node coordinates must be strictly increasing")

        if periodicity is None:
            periodicity = (False,) * self.dim
        self.periodicity = tuple(bool(p) for p in periodicity)
        if len(self.periodicity) != self.dim:
            raise ConfigurationError("periodicity needs one entry per axis")

        if boundary is None:
            boundary = tuple((0, 0) if p else (1, 1) for p in self.periodicity)
        self.boundary = tuple((int(lo), int(hi)) for lo, hi in boundary)
        if len(self.boundary) != self.dim:
            raise ConfigurationError("boundary needs one (low, high) tag pair per axis")
        for d, (p, tags) in enumerate(zip(self.periodicity, self.boundary)):
            if p and tags != (0, 0):
                raise ConfigurationError(f"periodic axis {d} cannot carry boundary tags {tags}")
            if not p and min(tags) <= 0:
                raise ConfigurationError(f"non-periodic axis {d} needs positive boundary tags, got {tags}")

        self.shape = tuple(r.size - 1 for r in self.brickrange)
        self.nface = 2 * self.dim
        self.nglobalelem = int(np.prod(self.shape))
        if self.size > self.nglobalelem:
            raise ConfigurationError(f"{self.size} ranks but only {self.nglobalelem} elements")

        if ordering == "morton":
            curve = morton_order(self.shape)
        elif ordering == "lexicographic":
            curve = np.arange(self.nglobalelem)
        else:
            raise ConfigurationError(f"unknown element ordering {ordering!r}")
        self.ordering = ordering
        # curve position <-> lexicographic id
        self._curve = curve
        self._position = np.empty_like(curve)
        self._position[curve] = np.arange(self.nglobalelem)

        starts = [r * self.nglobalelem // self.size for r in range(self.size + 1)]
        self._starts = np.asarray(starts)
        self._build()
        logger.debug(
            "rank %d: %d real, %d ghost elements, neighbours %s",
            self.rank,
            self.nrealelem,
            self.nghostelem,
            self.nabrtorank.tolist(),
        )

    # global helpers -----------------------------------------------------
    def owner(self, position: int) -> int:
        """Rank owning the element at curve position ``position``."""

        return int(np.searchsorted(self._starts, position, side="right") - 1)

    def _cartesian(self, position: int) -> tuple[int, ...]:
        lex = int(self._curve[position])
        return tuple(int(c) for c in np.unravel_index(lex, self.shape, order="F"))

    def _lex(self, cart: Sequence[int]) -> int:
        return int(np.ravel_multi_index(tuple(cart), self.shape, order="F"))

    def _face_neighbour(self, position: int, face: int):
        """Curve position of the neighbour across ``face`` or ``None``."""

        d, side = divmod(face, 2)
        cart = list(self._cartesian(position))
        cart[d] += 1 if side else -1
        if cart[d] < 0 or cart[d] >= self.shape[d]:
            if not self.periodicity[d]:
                return None
            cart[d] %= self.shape[d]
        return int(self._position[self._lex(cart)])

    # construction -------------------------------------------------------
    def _build(self) -> None:
        lo, hi = int(self._starts[self.rank]), int(self._starts[self.rank + 1])
        real_positions = np.arange(lo, hi)
        nreal = real_positions.size

        neighbours = np.full((self.nface, nreal), -1, dtype=np.int64)
        ghost_set: set[int] = set()
        send: dict[int, set[int]] = {}
        for e, pos in enumerate(real_positions):
            for f in range(self.nface):
                nb = self._face_neighbour(int(pos), f)
                if nb is None:
                    continue
                neighbours[f, e] = nb
                owner = self.owner(nb)
                if owner != self.rank:
                    ghost_set.add(nb)
                    send.setdefault(owner, set()).add(int(pos))

        ghosts = sorted(ghost_set, key=lambda p: (self.owner(p), p))
        local_positions = np.concatenate([real_positions, np.asarray(ghosts, dtype=np.int64)]).astype(np.int64)
        global_to_local = {int(p): i for i, p in enumerate(local_positions)}

        elemtoelem = np.empty((self.nface, nreal), dtype=np.int64)
        elemtoface = np.empty((self.nface, nreal), dtype=np.int64)
        elemtobndy = np.zeros((self.nface, nreal), dtype=np.int64)
        for e in range(nreal):
            for f in range(self.nface):
                nb = neighbours[f, e]
                if nb < 0:
                    elemtoelem[f, e] = e
                    elemtoface[f, e] = f
                    elemtobndy[f, e] = self.boundary[f // 2][f % 2]
                else:
                    elemtoelem[f, e] = global_to_local[int(nb)]
                    elemtoface[f, e] = f ^ 1

        self.nabrtorank = np.asarray(sorted(send), dtype=np.int64)
        self.nabrtorecv = []
        self.nabrtosend = []
        sendelems: list[int] = []
        ghost_owners = [self.owner(p) for p in ghosts]
        for r in self.nabrtorank:
            r = int(r)
            first = ghost_owners.index(r)
            count = ghost_owners.count(r)
            self.nabrtorecv.append(slice(first, first + count))
            ordered = sorted(send[r])
            self.nabrtosend.append(slice(len(sendelems), len(sendelems) + len(ordered)))
            sendelems.extend(global_to_local[p] for p in ordered)

        self.realelems = np.arange(nreal)
        self.ghostelems = np.arange(nreal, local_positions.size)
        self.elems = np.arange(local_positions.size)
        self.sendelems = np.asarray(sendelems, dtype=np.int64)
        self.globalelems = local_positions
        self.elemtoelem = elemtoelem
        self.elemtoface = elemtoface
        self.elemtobndy = elemtobndy
        self.elemtocoord = np.stack([self._vertices(int(p)) for p in local_positions])

    def _vertices(self, position: int) -> np.ndarray:
        cart = self._cartesian(position)
        corners = []
        for v in range(2**self.dim):
            corners.append([self.brickrange[d][cart[d] + ((v >> d) & 1)] for d in range(self.dim)])
        return np.asarray(corners)

    # counts -------------------------------------------------------------
    @property
    def nrealelem(self) -> int:
        return self.realelems.size

    @property
    def nghostelem(self) -> int:
        return self.ghostelems.size

    @property
    def nelem(self) -> int:
        return self.elems.size

    @property
    def boundary_tags(self) -> tuple[int, ...]:
        """Distinct positive boundary tags present on this rank."""

        return tuple(int(t) for t in np.unique(self.elemtobndy) if t > 0)

    def cartesian_index(self, local: int) -> tuple[int, ...]:
        return self._cartesian(int(self.globalelems[local]))
