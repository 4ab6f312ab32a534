"""Parallel runtime boundary.

The core never initialises or tears down a parallel runtime; callers inject a
process group at construction. Three groups are provided:

``SerialProcessGroup``
    single rank, exchanges are no-ops.
``MPIProcessGroup``
    wraps an already initialised ``mpi4py`` communicator.
``InProcessWorld``
    a thread-backed group of ``size`` ranks living in one interpreter, used by
    the test suite to exercise halo exchanges and reductions without MPI.
"""
from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Sequence

import numpy as np

from .errors import CommunicationError

__all__ = [
    "ProcessGroup",
    "SerialProcessGroup",
    "MPIProcessGroup",
    "InProcessWorld",
    "InProcessGroup",
]

logger = logging.getLogger(__name__)


_REDUCTIONS = {"sum": np.sum, "max": np.max, "min": np.min}


def _check_op(op: str) -> None:
    if op not in _REDUCTIONS:
        raise ValueError(f"unknown reduction {op!r}")


class ProcessGroup:
    """Interface shared by all process groups.

    ``isend``/``irecv`` return request objects whose ``wait()`` completes the
    transfer; ``irecv(...).wait()`` returns the received array.
    """

    rank: int = 0
    size: int = 1

    def isend(self, array: np.ndarray, dest: int, tag: int):
        raise NotImplementedError

    def irecv(self, source: int, tag: int):
        raise NotImplementedError

    def allreduce(self, value: float, op: str = "sum") -> float:
        raise NotImplementedError

    def barrier(self) -> None:
        raise NotImplementedError


class _CompletedRequest:
    def __init__(self, payload=None):
        self._payload = payload

    def wait(self):
        return self._payload


class SerialProcessGroup(ProcessGroup):
    """Single-rank group."""

    rank = 0
    size = 1

    def isend(self, array, dest, tag):
        raise CommunicationError(f"serial group cannot send to rank {dest}")

    def irecv(self, source, tag):
        raise CommunicationError(f"serial group cannot receive from rank {source}")

    def allreduce(self, value, op="sum"):
        _check_op(op)
        return float(value)

    def barrier(self):
        return None


class _MPIRecvRequest:
    def __init__(self, request, buffer):
        self._request = request
        self._buffer = buffer

    def wait(self):
        self._request.Wait()
        return self._buffer


class _MPISendRequest:
    def __init__(self, request, buffer):
        self._request = request
        # keep the send buffer alive until the transfer completes
        self._buffer = buffer

    def wait(self):
        self._request.Wait()
        return None


class MPIProcessGroup(ProcessGroup):
    """Adapter around an ``mpi4py.MPI.Comm``.

    Receive buffers are registered by the caller through :meth:`expect` so the
    buffer-based ``Isend``/``Irecv`` calls can be used; the communicator is
    never initialised or finalised here.
    """

    def __init__(self, comm: Any):
        self.comm = comm
        self.rank = int(comm.Get_rank())
        self.size = int(comm.Get_size())
        self._recv_shapes: dict[tuple[int, int], tuple[tuple[int, ...], Any]] = {}

    def expect(self, source: int, tag: int, shape: tuple[int, ...], dtype) -> None:
        """Register the shape of the message ``(source, tag)`` before ``irecv``."""

        self._recv_shapes[(source, tag)] = (tuple(shape), np.dtype(dtype))

    def isend(self, array, dest, tag):
        buf = np.ascontiguousarray(array)
        return _MPISendRequest(self.comm.Isend(buf, dest=dest, tag=tag), buf)

    def irecv(self, source, tag):
        try:
            shape, dtype = self._recv_shapes[(source, tag)]
        except KeyError as exc:
            raise CommunicationError(f"no receive shape registered for rank {source}, tag {tag}") from exc
        buf = np.empty(shape, dtype=dtype)
        return _MPIRecvRequest(self.comm.Irecv(buf, source=source, tag=tag), buf)

    def allreduce(self, value, op="sum"):
        from mpi4py import MPI

        _check_op(op)
        mpi_op = {"sum": MPI.SUM, "max": MPI.MAX, "min": MPI.MIN}[op]
        return float(self.comm.allreduce(float(value), op=mpi_op))

    def barrier(self):
        self.comm.Barrier()


class _QueueRecvRequest:
    def __init__(self, group: "InProcessGroup", source: int, tag: int):
        self._group = group
        self._source = source
        self._tag = tag

    def wait(self):
        return self._group._world._take(self._source, self._group.rank, self._tag)


class InProcessGroup(ProcessGroup):
    """One rank's view of an :class:`InProcessWorld`."""

    def __init__(self, world: "InProcessWorld", rank: int):
        self._world = world
        self.rank = rank
        self.size = world.size

    def isend(self, array, dest, tag):
        self._world._put(self.rank, dest, tag, np.array(array, copy=True))
        return _CompletedRequest()

    def irecv(self, source, tag):
        return _QueueRecvRequest(self, source, tag)

    def allreduce(self, value, op="sum"):
        _check_op(op)
        return self._world._allreduce(self.rank, float(value), op)

    def barrier(self):
        self._world._wait_barrier()

    def expect(self, source, tag, shape, dtype):
        return None


class InProcessWorld:
    """Thread-backed world of ``size`` ranks sharing one interpreter.

    ``run(fn)`` calls ``fn(group)`` on one thread per rank and returns the list
    of per-rank results. An exception on any rank aborts the world: blocked
    receives and barriers on the other ranks raise
    :class:`~dg_climate_jax.errors.CommunicationError`, and the first original
    exception is re-raised by ``run``.
    """

    def __init__(self, size: int, timeout: float = 120.0):
        if size < 1:
            raise ValueError(f"world size must be positive, got {size}")
        self.size = size
        self.timeout = timeout
        self._lock = threading.Lock()
        self._queues: dict[tuple[int, int, int], queue.Queue] = {}
        self._barrier = threading.Barrier(size)
        self._partials = [0.0] * size
        self._aborted = threading.Event()

    def group(self, rank: int) -> InProcessGroup:
        return InProcessGroup(self, rank)

    def groups(self) -> list[InProcessGroup]:
        return [self.group(r) for r in range(self.size)]

    def _queue(self, src: int, dst: int, tag: int) -> queue.Queue:
        key = (src, dst, tag)
        with self._lock:
            q = self._queues.get(key)
            if q is None:
                q = self._queues[key] = queue.Queue()
            return q

    def _put(self, src, dst, tag, payload):
        if not 0 <= dst < self.size:
            raise CommunicationError(f"rank {dst} outside world of size {self.size}")
        self._queue(src, dst, tag).put(payload)

    def _take(self, src, dst, tag):
        q = self._queue(src, dst, tag)
        waited = 0.0
        while True:
            if self._aborted.is_set():
                raise CommunicationError(f"world aborted while rank {dst} waited on rank {src}")
            try:
                return q.get(timeout=0.05)
            except queue.Empty:
                waited += 0.05
                if waited >= self.timeout:
                    raise CommunicationError(f"timed out receiving from rank {src} on rank {dst} (tag {tag})")

    def _wait_barrier(self):
        try:
            self._barrier.wait(timeout=self.timeout)
        except threading.BrokenBarrierError as exc:
            raise CommunicationError("barrier broken; another rank failed") from exc

    def _allreduce(self, rank, value, op):
        self._partials[rank] = value
        self._wait_barrier()
        # reduce in rank order so every rank sees the same rounding
        total = float(_REDUCTIONS[op](np.asarray(self._partials)))
        self._wait_barrier()
        return total

    def abort(self) -> None:
        self._aborted.set()
        self._barrier.abort()

    def run(self, fn: Callable[[InProcessGroup], Any], args: Sequence[Any] = ()) -> list[Any]:
        results: list[Any] = [None] * self.size
        errors: list[BaseException | None] = [None] * self.size

        def target(rank):
            try:
                results[rank] = fn(self.group(rank), *args)
            except BaseException as exc:
                errors[rank] = exc
                logger.debug("rank %d failed: %r", rank, exc)
                self.abort()

        threads = [threading.Thread(target=target, args=(r,), name=f"rank-{r}") for r in range(self.size)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        # prefer the root cause over secondary CommunicationErrors
        primary = [e for e in errors if e is not None and not isinstance(e, CommunicationError)]
        if primary:
            raise primary[0]
        secondary = [e for e in errors if e is not None]
        if secondary:
            raise secondary[0]
        return results
