#!/usr/bin/env python3
"""
Reactive Session - Parameter bindings driving live aggregation results

A session holds the analyst's current parameters (e.g. the selected pickup
and dropoff neighborhoods) and a set of derivations. Each derivation names the
parameters it depends on and how to build its request from them. Changing a
parameter recomputes only the derivations that read it.

Per derivation:

    IDLE ──change──> COMPUTING ──done──> READY ──change──> COMPUTING ...
                        │  └──change──> COMPUTING (new generation)
                        └──error──> IDLE

Every computation is tagged with a generation number. Only the completion
whose generation is still current may write the derivation's state; anything
older is discarded on arrival and its backend job is cancelled on a best
effort basis. Subscribers of a derivation share one backend call and are
notified once per applied completion, outside the session lock, so a slow
subscriber never holds up update() or status() on other threads.
"""

import logging
import threading
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .aggregation_engine import AggregationEngine, AggregationResult
from .config import DEFAULT_SESSION_WORKERS
from .errors import TripViewError
from .query_builder import AggregationRequest

logger = logging.getLogger(__name__)

ResultCallback = Callable[[AggregationResult], Any]
ErrorCallback = Callable[[Exception], Any]


class SessionStatus(Enum):
    IDLE = 'idle'
    COMPUTING = 'computing'
    READY = 'ready'


@dataclass(frozen=True)
class Derivation:
    """
    A named result node.

    build(params) receives the current bindings and returns the request to
    run, typically a QueryBuilder pipeline.
    """
    name: str
    depends_on: Tuple[str, ...]
    build: Callable[[Mapping[str, Any]], AggregationRequest]


@dataclass
class _Subscriber:
    on_result: ResultCallback
    on_error: Optional[ErrorCallback] = None


@dataclass
class _Cell:
    derivation: Derivation
    status: SessionStatus = SessionStatus.IDLE
    generation: int = 0
    result: Optional[AggregationResult] = None
    error: Optional[Exception] = None
    computed_for: Optional[Dict[str, Any]] = None
    pending_for: Optional[Dict[str, Any]] = None
    job_id: Optional[str] = None
    future: Optional[Future] = None
    subscribers: List[_Subscriber] = field(default_factory=list)
    # Serializes callbacks; delivered is the newest generation handed out
    delivery: Any = field(default_factory=threading.RLock)
    delivered: int = 0


class ReactiveSession:
    """
    Owns the parameter bindings and derived results of one analyst session.

    Args:
        engine: AggregationEngine running every computation
        view: JoinedView (or partition) the derivations aggregate over
        executor: Executor for engine calls (a private thread pool by default)
        max_workers: Size of the private thread pool; 1 keeps at most one
            backend job per session in flight
        session_id: Prefix for backend job ids
    """

    def __init__(
        self,
        engine: AggregationEngine,
        view,
        executor: Optional[Executor] = None,
        max_workers: int = DEFAULT_SESSION_WORKERS,
        session_id: Optional[str] = None,
    ):
        self.engine = engine
        self.view = view
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"session-{self.session_id}"
        )
        self._lock = threading.RLock()
        self._settled = threading.Condition(self._lock)
        self._cells: Dict[str, _Cell] = {}
        self._params: Dict[str, Any] = {}
        self._closed = False
        logger.info(f"Session {self.session_id} opened on {view.name}")

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def add_derivation(
        self,
        name: str,
        depends_on: Iterable[str],
        build: Callable[[Mapping[str, Any]], AggregationRequest],
    ) -> Derivation:
        """
        Register a derivation. It computes right away when all of its
        dependencies are already bound.
        """
        derivation = Derivation(name, tuple(depends_on), build)
        with self._lock:
            self._check_open()
            if name in self._cells:
                raise ValueError(f"Derivation '{name}' already exists")
            cell = _Cell(derivation)
            self._cells[name] = cell
            if self._bound(cell):
                self._start(cell)
        return derivation

    def subscribe(self, name: str, on_result: ResultCallback, on_error: Optional[ErrorCallback] = None):
        """Register a dependent; it hears about every later completion of `name`."""
        with self._lock:
            self._cell(name).subscribers.append(_Subscriber(on_result, on_error))

    def unsubscribe(self, name: str, on_result: ResultCallback) -> bool:
        with self._lock:
            cell = self._cell(name)
            for subscriber in cell.subscribers:
                if subscriber.on_result == on_result:
                    cell.subscribers.remove(subscriber)
                    return True
        return False

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def update(self, **params) -> List[str]:
        """
        Bind parameters and recompute the derivations that read a changed one.

        Rebinding a parameter to an equal value is not a change.

        Returns:
            Names of the derivations that started computing
        """
        with self._lock:
            self._check_open()
            changed = {k for k, v in params.items() if k not in self._params or self._params[k] != v}
            self._params.update(params)
            if not changed:
                return []

            started = []
            for cell in self._cells.values():
                if changed.intersection(cell.derivation.depends_on) and self._bound(cell):
                    self._start(cell)
                    started.append(cell.derivation.name)
        logger.info(f"Session {self.session_id}: {sorted(changed)} changed -> recompute {started}")
        return started

    def refresh(self, name: Optional[str] = None) -> List[str]:
        """Recompute one derivation (or every bound one) with the current bindings."""
        with self._lock:
            self._check_open()
            if name is not None:
                cell = self._cell(name)
                if not self._bound(cell):
                    missing = [p for p in cell.derivation.depends_on if p not in self._params]
                    raise ValueError(f"Derivation '{name}' has unbound parameters: {missing}")
                cells = [cell]
            else:
                cells = [c for c in self._cells.values() if self._bound(c)]
            for cell in cells:
                self._start(cell)
            return [cell.derivation.name for cell in cells]

    def wait(self, name: Optional[str] = None, timeout: Optional[float] = None) -> bool:
        """
        Block until `name` (or every derivation) has stopped computing.

        Returns:
            False if the timeout expired first
        """
        def settled():
            if self._closed:
                return True
            cells = [self._cell(name)] if name is not None else list(self._cells.values())
            return all(c.status is not SessionStatus.COMPUTING for c in cells)

        with self._settled:
            return self._settled.wait_for(settled, timeout=timeout)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def params(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._params)

    @property
    def closed(self) -> bool:
        return self._closed

    def derivations(self) -> List[str]:
        with self._lock:
            return list(self._cells)

    def status(self, name: str) -> SessionStatus:
        with self._lock:
            return self._cell(name).status

    def result(self, name: str) -> Optional[AggregationResult]:
        """Latest applied result (kept while a newer one computes)."""
        with self._lock:
            return self._cell(name).result

    def error(self, name: str) -> Optional[Exception]:
        with self._lock:
            return self._cell(name).error

    def computed_for(self, name: str) -> Optional[Dict[str, Any]]:
        """Bindings the current result was computed from."""
        with self._lock:
            cell = self._cell(name)
            return dict(cell.computed_for) if cell.computed_for is not None else None

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self):
        """Cancel in-flight work and drop all session state."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for cell in self._cells.values():
                cell.generation += 1
                if cell.status is SessionStatus.COMPUTING:
                    self._cancel(cell.future, cell.job_id)
            self._cells.clear()
            self._params.clear()
            self._settled.notify_all()
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info(f"Session {self.session_id} closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # Internals (callers hold self._lock unless noted)
    # ------------------------------------------------------------------

    def _check_open(self):
        if self._closed:
            raise RuntimeError(f"Session {self.session_id} is closed")

    def _cell(self, name: str) -> _Cell:
        cell = self._cells.get(name)
        if cell is None:
            raise KeyError(f"No derivation '{name}'. Available: {list(self._cells)}")
        return cell

    def _bound(self, cell: _Cell) -> bool:
        return all(p in self._params for p in cell.derivation.depends_on)

    def _cancel(self, future: Optional[Future], job_id: Optional[str]):
        if future is not None and future.cancel():
            logger.debug(f"Job {job_id} cancelled before it started")
            return
        if job_id is not None and self.engine.cancel(job_id):
            logger.info(f"Superseded job {job_id} interrupted")

    def _start(self, cell: _Cell):
        name = cell.derivation.name
        if cell.status is SessionStatus.COMPUTING:
            self._cancel(cell.future, cell.job_id)

        cell.generation += 1
        generation = cell.generation
        job_id = f"{self.session_id}:{name}:{generation}"
        snapshot = dict(self._params)
        cell.status = SessionStatus.COMPUTING
        cell.job_id = job_id
        cell.pending_for = snapshot
        cell.future = None

        try:
            request = cell.derivation.build(snapshot)
        except Exception as e:
            # Build-time mistakes fail fast without reaching the backend
            if not isinstance(e, TripViewError):
                logger.exception(f"Building {name} failed unexpectedly")
            self._fail(name, generation, e)
            return

        cell.future = self._executor.submit(self._compute, name, generation, job_id, request)

    def _compute(self, name: str, generation: int, job_id: str, request: AggregationRequest):
        """Runs on the executor; takes the lock only to apply the outcome."""
        try:
            result = self.engine.execute(request, self.view, job_id=job_id)
        except Exception as e:
            if not isinstance(e, TripViewError):
                logger.exception(f"Job {job_id} failed unexpectedly")
            self._fail(name, generation, e)
            return
        self._complete(name, generation, result)

    def _current(self, name: str, generation: int) -> Optional[_Cell]:
        if self._closed:
            return None
        cell = self._cells.get(name)
        if cell is None or cell.generation != generation:
            return None
        return cell

    def _complete(self, name: str, generation: int, result: AggregationResult):
        with self._lock:
            cell = self._current(name, generation)
            if cell is None:
                logger.debug(f"Discarding stale result for {name} (generation {generation})")
                return
            cell.status = SessionStatus.READY
            cell.result = result
            cell.error = None
            cell.computed_for = cell.pending_for
            cell.future = None
            self._settled.notify_all()
            handlers = [s.on_result for s in cell.subscribers]
        self._notify(cell, generation, handlers, result, 'a result')

    def _fail(self, name: str, generation: int, error: Exception):
        with self._lock:
            cell = self._current(name, generation)
            if cell is None:
                logger.debug(f"Discarding stale error for {name} (generation {generation}): {error}")
                return
            cell.status = SessionStatus.IDLE
            cell.error = error
            cell.future = None
            self._settled.notify_all()
            handlers = [s.on_error for s in cell.subscribers if s.on_error is not None]
        if not handlers:
            logger.warning(f"{name} failed with no error handler: {error}")
        self._notify(cell, generation, handlers, error, 'an error')

    def _notify(self, cell: _Cell, generation: int, handlers, payload, what: str):
        """Call subscribers outside the session lock, newest generation wins."""
        name = cell.derivation.name
        with cell.delivery:
            if self._closed or cell.delivered > generation:
                logger.debug(f"Skipping {what} for {name} (generation {generation}): newer one delivered")
                return
            cell.delivered = generation
            for handler in handlers:
                try:
                    handler(payload)
                except Exception:
                    logger.exception(f"Subscriber of {name} failed handling {what}")
