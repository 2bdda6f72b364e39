"""
Background layout worker.

The simulation runs on its own thread and talks to the caller only through
messages: commands go in through a queue, position snapshots come out through
a single-slot mailbox that always holds the newest tick.
"""
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping, Optional, Tuple

from .errors import ValidationError
from .force_layout import ForceSimulation, LayoutSettings, as_layout_settings, auto_stop_delay
from .graph_store import POSITION_FIELDS, as_view, scoped_writer


class WorkerState(Enum):
    IDLE = 'idle'
    INITIALIZED = 'initialized'
    RUNNING = 'running'
    PAUSED = 'paused'


# ----------------------------------------------------------------------
# Inbound commands
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class InitCommand:
    nodes: Tuple[str, ...]
    edges: Tuple[Tuple[str, str], ...]
    settings: Any = field(default_factory=LayoutSettings)
    positions: Optional[Mapping[str, Tuple[float, float]]] = None
    autostart: bool = True

    def __post_init__(self):
        object.__setattr__(self, 'settings', as_layout_settings(self.settings))


@dataclass(frozen=True)
class StartCommand:
    pass


@dataclass(frozen=True)
class StopCommand:
    pass


@dataclass(frozen=True)
class UpdateSettingsCommand:
    """``settings`` is a LayoutSettings or a mapping of just the changed keys."""
    settings: Any

    def __post_init__(self):
        if isinstance(self.settings, Mapping):
            # Reject unknown keys and bad values before the command is queued
            LayoutSettings().with_forces(self.settings)
            object.__setattr__(self, 'settings', dict(self.settings))
        elif not isinstance(self.settings, LayoutSettings):
            raise ValidationError(f"Unsupported layout settings {type(self.settings).__name__}")


@dataclass(frozen=True)
class ShutdownCommand:
    pass


WorkerCommand = (InitCommand, StartCommand, StopCommand, UpdateSettingsCommand, ShutdownCommand)


# ----------------------------------------------------------------------
# Outbound messages
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class NodePosition:
    id: str
    x: float
    y: float


@dataclass(frozen=True)
class TickMessage:
    sequence: int
    alpha: float
    positions: Tuple[NodePosition, ...]

    def as_dict(self):
        return {
            'type': 'tick',
            'positions': [{'id': p.id, 'x': p.x, 'y': p.y} for p in self.positions],
        }


@dataclass(frozen=True)
class EndMessage:
    sequence: int
    reason: Literal['converged', 'auto_stop', 'error']


class LatestTickMailbox:
    """
    Single-slot, coalescing tick channel.

    Publishing replaces the slot only with a newer sequence number, so a slow
    reader skips intermediate ticks but never sees them out of order.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._latest = None
        self._last_taken = 0
        self.published = 0
        self.taken = 0

    def publish(self, tick):
        with self._cond:
            if self._latest is None or tick.sequence > self._latest.sequence:
                self._latest = tick
            self.published += 1
            self._cond.notify_all()

    def peek(self):
        with self._cond:
            return self._latest

    def take(self):
        """Newest tick not yet taken, or None."""
        with self._cond:
            return self._take_locked()

    def wait(self, timeout=None):
        """Block until an untaken tick is available and take it; None on timeout."""
        with self._cond:
            self._cond.wait_for(
                lambda: self._latest is not None and self._latest.sequence > self._last_taken,
                timeout=timeout,
            )
            return self._take_locked()

    def _take_locked(self):
        if self._latest is None or self._latest.sequence <= self._last_taken:
            return None
        self._last_taken = self._latest.sequence
        self.taken += 1
        return self._latest

    @property
    def coalesced(self):
        """Number of published ticks no reader ever took."""
        return self.published - self.taken


class LayoutWorker:
    """
    Runs a ForceSimulation on a background thread.

    State machine: IDLE -> INITIALIZED -> RUNNING <-> PAUSED. ``init`` is only
    accepted from IDLE; ``start`` and ``update_settings`` need a simulation;
    ``stop`` is accepted in every state. Rejected commands do not stop the
    worker, their messages are collected in ``errors``.

    Parameters:
    -----------
    mailbox : LatestTickMailbox, optional
    tick_interval : float, default=0.0
        Seconds to sleep between ticks
    clock : callable, optional
        Monotonic clock for the auto-stop deadline
    simulation_factory : callable, default=ForceSimulation
        Called as ``factory(nodes, edges, settings=..., positions=...)``
    verbose : bool, default=False
    """

    def __init__(self, mailbox=None, tick_interval=0.0, clock=time.monotonic, simulation_factory=ForceSimulation,
                 verbose=False):
        self.mailbox = mailbox or LatestTickMailbox()
        self.events = queue.Queue()
        self.errors = []
        self.tick_interval = tick_interval
        self.verbose = verbose
        self._clock = clock
        self._simulation_factory = simulation_factory
        self._commands = queue.Queue()
        self._state = WorkerState.IDLE
        self._state_changed = threading.Condition()
        self._simulation = None
        self._deadline = None
        self._sequence = 0
        self._thread = None
        self._thread_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Caller side
    # ------------------------------------------------------------------
    @property
    def state(self):
        return self._state

    @property
    def alpha(self):
        sim = self._simulation
        return None if sim is None else sim.alpha

    @property
    def settings(self):
        sim = self._simulation
        return None if sim is None else sim.settings

    def send(self, command):
        if not isinstance(command, WorkerCommand):
            raise ValidationError(f"Unsupported worker command {type(command).__name__}")
        self._ensure_thread()
        self._commands.put(command)

    def init(self, nodes, edges, settings=None, positions=None, autostart=True):
        self.send(InitCommand(
            nodes=tuple(nodes),
            edges=tuple((s, t) for s, t in edges),
            settings=settings,
            positions=dict(positions) if positions else None,
            autostart=autostart,
        ))

    def init_from_view(self, view, settings=None, autostart=True):
        view = as_view(view)
        positions = {}
        for node_id in view.nodes():
            attrs = view.node_attributes(node_id)
            if 'x' in attrs and 'y' in attrs:
                positions[node_id] = (attrs['x'], attrs['y'])
        edges = [(s, t) for _, s, t in view.edge_list()]
        self.init(view.nodes(), edges, settings=settings, positions=positions, autostart=autostart)

    def start(self):
        self.send(StartCommand())

    def stop(self):
        self.send(StopCommand())

    def update_settings(self, settings):
        self.send(UpdateSettingsCommand(settings))

    def shutdown(self, timeout=5.0):
        with self._thread_lock:
            thread = self._thread
        if thread is None:
            return
        self._commands.put(ShutdownCommand())
        thread.join(timeout)

    def wait_for_state(self, *states, timeout=None):
        """Block until the worker is in one of ``states``; returns whether it got there."""
        with self._state_changed:
            return self._state_changed.wait_for(lambda: self._state in states, timeout=timeout)

    def wait_idle(self, timeout=None):
        """Block until every command sent so far has been processed."""
        done = threading.Event()
        self._commands.put(done)
        self._ensure_thread()
        return done.wait(timeout)

    def apply_latest(self, target):
        """
        Copy the newest untaken tick into the graph's ``x``/``y`` attributes.

        ``target`` is a GraphStore or a positions writer. Nodes dropped from the
        graph since ``init`` are skipped. Returns the applied TickMessage or None.
        """
        tick = self.mailbox.take()
        if tick is None:
            return None
        writer = scoped_writer(target, node_fields=POSITION_FIELDS)
        updates = {p.id: {'x': p.x, 'y': p.y} for p in tick.positions if writer.has_node(p.id)}
        writer.set_many_node_attributes(updates)
        return tick

    def __enter__(self):
        self._ensure_thread()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def _ensure_thread(self):
        with self._thread_lock:
            if self._thread is None:
                self._thread = threading.Thread(target=self._loop, name='kg-layout-worker', daemon=True)
                self._thread.start()

    def _set_state(self, state):
        with self._state_changed:
            self._state = state
            self._state_changed.notify_all()

    def _loop(self):
        while True:
            running = self._state is WorkerState.RUNNING
            try:
                command = self._commands.get(block=not running)
            except queue.Empty:
                command = None

            if isinstance(command, ShutdownCommand):
                break
            if isinstance(command, threading.Event):
                command.set()
                continue
            if command is not None:
                self._handle(command)
                continue
            try:
                self._step()
            except Exception as exc:
                self._record_error('tick', exc, prefix=type(exc).__name__)
                self._finish('error')

    def _handle(self, command):
        try:
            if isinstance(command, InitCommand):
                self._on_init(command)
            elif isinstance(command, StartCommand):
                self._on_start()
            elif isinstance(command, StopCommand):
                self._on_stop()
            elif isinstance(command, UpdateSettingsCommand):
                self._on_update_settings(command.settings)
        except ValidationError as exc:
            self._record_error(type(command).__name__, exc)
        except Exception as exc:
            self._record_error(type(command).__name__, exc, prefix=type(exc).__name__)

    def _record_error(self, where, exc, prefix=None):
        message = f"{prefix}: {exc}" if prefix else str(exc)
        self.errors.append(message)
        if self.verbose:
            print(f"Layout worker error in {where}: {message}")

    def _on_init(self, command):
        if self._state is not WorkerState.IDLE:
            raise ValidationError(f"init is only valid from IDLE (state is {self._state.name})")
        self._simulation = self._simulation_factory(
            command.nodes, command.edges, settings=command.settings, positions=command.positions,
        )
        self._set_state(WorkerState.INITIALIZED)
        if self.verbose:
            print(f"Layout worker initialized: {self._simulation}")
        if command.autostart:
            self._on_start()

    def _on_start(self):
        if self._simulation is None:
            raise ValidationError("start requires a prior init")
        self._simulation.restart(1.0)
        self._arm_deadline()
        self._set_state(WorkerState.RUNNING)

    def _on_stop(self):
        if self._state is WorkerState.RUNNING:
            self._set_state(WorkerState.PAUSED)

    def _on_update_settings(self, settings):
        if self._simulation is None:
            raise ValidationError("update_settings requires a prior init")
        self._simulation.update_settings(settings)
        self._arm_deadline()
        self._set_state(WorkerState.RUNNING)

    def _arm_deadline(self):
        self._deadline = self._clock() + auto_stop_delay(len(self._simulation.node_ids))

    def _step(self):
        sim = self._simulation
        if self._deadline is not None and self._clock() >= self._deadline:
            self._finish('auto_stop')
            return

        positions = sim.tick()
        self._sequence += 1
        self.mailbox.publish(TickMessage(
            sequence=self._sequence,
            alpha=sim.alpha,
            positions=tuple(
                NodePosition(node_id, float(x), float(y))
                for node_id, (x, y) in zip(sim.node_ids, positions)
            ),
        ))
        if sim.converged:
            self._finish('converged')
        elif self.tick_interval:
            time.sleep(self.tick_interval)

    def _finish(self, reason):
        self._set_state(WorkerState.PAUSED)
        self.events.put(EndMessage(sequence=self._sequence, reason=reason))
        if self.verbose:
            print(f"Layout worker paused ({reason}) after {self._simulation.tick_count} ticks")
