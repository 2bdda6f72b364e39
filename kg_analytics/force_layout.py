"""
Force-directed layout simulation.

Velocity-based relaxation with the classic d3-force components: link
springs, many-body repulsion (grid-approximated, numba-compiled) and collision
avoidance. ``alpha`` starts at 1.0 and decays geometrically; the simulation has
converged once it drops below ``alpha_min``.
"""
import math
from dataclasses import asdict, dataclass, fields, replace
from typing import Mapping, Optional

import numpy as np
from numba import njit
from scipy.spatial import cKDTree

from .core_utilities import perf_monitor
from .errors import ValidationError

# Inbound message keys used by the interactive client
_CAMEL_CASE_KEYS = {
    'linkDistance': 'link_distance',
    'chargeStrength': 'charge_strength',
    'collideRadius': 'collide_radius',
    'velocityDecay': 'velocity_decay',
    'alphaMin': 'alpha_min',
    'alphaDecay': 'alpha_decay',
    'reheatAlpha': 'reheat_alpha',
}

_NUMERIC_FIELDS = ('link_distance', 'charge_strength', 'collide_radius', 'theta', 'velocity_decay',
                   'alpha_min', 'reheat_alpha')

FORCE_FIELDS = ('link_distance', 'charge_strength', 'collide_radius', 'theta')
MAX_GRID_SIZE = 64


@dataclass
class LayoutSettings:
    """Force parameters of the layout simulation."""
    link_distance: float = 30.0
    charge_strength: float = -200.0
    collide_radius: float = 40.0
    theta: float = 0.8
    velocity_decay: float = 0.4
    alpha_min: float = 0.001
    alpha_decay: Optional[float] = None  # None: reach alpha_min in ~300 ticks
    reheat_alpha: float = 0.3
    seed: Optional[int] = None

    def __post_init__(self):
        for name in _NUMERIC_FIELDS:
            try:
                setattr(self, name, float(getattr(self, name)))
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"{name} must be a number") from exc
        if self.alpha_decay is not None:
            try:
                self.alpha_decay = float(self.alpha_decay)
            except (TypeError, ValueError) as exc:
                raise ValidationError("alpha_decay must be a number") from exc
        for name in ('link_distance', 'charge_strength', 'collide_radius', 'theta'):
            if not math.isfinite(getattr(self, name)):
                raise ValidationError(f"{name} must be finite")
        if self.link_distance < 0:
            raise ValidationError("link_distance must be >= 0")
        if self.collide_radius < 0:
            raise ValidationError("collide_radius must be >= 0")
        if self.theta <= 0:
            raise ValidationError("theta must be > 0")
        if not 0.0 <= self.velocity_decay <= 1.0:
            raise ValidationError("velocity_decay must be in [0, 1]")
        if not 0.0 < self.alpha_min < 1.0:
            raise ValidationError("alpha_min must be in (0, 1)")
        if self.alpha_decay is not None and not 0.0 < self.alpha_decay < 1.0:
            raise ValidationError("alpha_decay must be in (0, 1)")

    @property
    def effective_alpha_decay(self):
        if self.alpha_decay is not None:
            return self.alpha_decay
        return 1.0 - self.alpha_min ** (1.0 / 300.0)

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        """Build settings from snake_case or camelCase keys; unknown keys are rejected."""
        return cls(**_setting_kwargs(data))

    def with_forces(self, other):
        """
        Copy of these settings with the force parameters taken from ``other``.

        ``other`` may also be a mapping (snake_case or camelCase keys), in which
        case only the keys it names change.
        """
        if isinstance(other, Mapping):
            return replace(self, **_setting_kwargs(other))
        return replace(self, **{name: getattr(other, name) for name in FORCE_FIELDS})


def _setting_kwargs(data):
    known = {f.name for f in fields(LayoutSettings)}
    kwargs = {}
    for key, value in (data or {}).items():
        name = _CAMEL_CASE_KEYS.get(key, key)
        if name not in known:
            raise ValidationError(f"Unknown layout setting '{key}'")
        kwargs[name] = value
    return kwargs


def as_layout_settings(settings):
    """LayoutSettings from None, a LayoutSettings or a settings mapping."""
    if settings is None:
        return LayoutSettings()
    if isinstance(settings, LayoutSettings):
        return settings
    if isinstance(settings, Mapping):
        return LayoutSettings.from_dict(settings)
    raise ValidationError(f"Unsupported layout settings {type(settings).__name__}")


def auto_stop_delay(n_nodes):
    """Seconds a layout may run before it is stopped; shorter for larger graphs."""
    if n_nodes > 1000:
        return 5.0
    if n_nodes > 500:
        return 10.0
    if n_nodes > 100:
        return 15.0
    return 30.0


@njit(cache=True, nogil=True)
def _jiggle(i, j):
    # Deterministic, never zero, magnitude below 1e-6
    h = (i * 7919 + j * 104729) % 1000
    return ((h + 1) / 1001.0 - 0.5) * 1e-6


@njit(cache=True, nogil=True)
def _many_body_grid(positions, strength, alpha, theta2, grid_size):
    """
    Many-body velocity increments on a uniform grid of cells.

    Nodes in the 3x3 neighbourhood of a node's own cell interact exactly;
    farther cells act through their centroid when cell_width / distance < theta.
    """
    n = positions.shape[0]
    dv = np.zeros((n, 2))
    if n < 2:
        return dv

    min_x = positions[:, 0].min()
    min_y = positions[:, 1].min()
    extent = max(positions[:, 0].max() - min_x, positions[:, 1].max() - min_y)
    if extent <= 0.0:
        extent = 1.0
    width = extent / grid_size

    n_cells = grid_size * grid_size
    gx = np.empty(n, np.int64)
    gy = np.empty(n, np.int64)
    counts = np.zeros(n_cells, np.int64)
    sum_x = np.zeros(n_cells)
    sum_y = np.zeros(n_cells)
    for i in range(n):
        cx = int((positions[i, 0] - min_x) / width)
        cy = int((positions[i, 1] - min_y) / width)
        if cx >= grid_size:
            cx = grid_size - 1
        if cy >= grid_size:
            cy = grid_size - 1
        gx[i] = cx
        gy[i] = cy
        c = cx * grid_size + cy
        counts[c] += 1
        sum_x[c] += positions[i, 0]
        sum_y[c] += positions[i, 1]

    start = np.zeros(n_cells + 1, np.int64)
    for c in range(n_cells):
        start[c + 1] = start[c] + counts[c]
    order = np.empty(n, np.int64)
    cursor = start[:-1].copy()
    for i in range(n):
        c = gx[i] * grid_size + gy[i]
        order[cursor[c]] = i
        cursor[c] += 1

    width2 = width * width
    for i in range(n):
        xi = positions[i, 0]
        yi = positions[i, 1]
        for cx in range(grid_size):
            for cy in range(grid_size):
                c = cx * grid_size + cy
                count = counts[c]
                if count == 0:
                    continue
                near = abs(cx - gx[i]) <= 1 and abs(cy - gy[i]) <= 1
                if not near:
                    dx = sum_x[c] / count - xi
                    dy = sum_y[c] / count - yi
                    l = dx * dx + dy * dy
                    if width2 / theta2 < l:
                        if l < 1.0:
                            l = math.sqrt(l)
                        w = strength * count * alpha / l
                        dv[i, 0] += dx * w
                        dv[i, 1] += dy * w
                        continue
                for k in range(start[c], start[c + 1]):
                    j = order[k]
                    if j == i:
                        continue
                    dx = positions[j, 0] - xi
                    dy = positions[j, 1] - yi
                    if dx == 0.0:
                        dx = _jiggle(i, j)
                    if dy == 0.0:
                        dy = _jiggle(j, i)
                    l = dx * dx + dy * dy
                    if l < 1.0:
                        l = math.sqrt(l)
                    w = strength * alpha / l
                    dv[i, 0] += dx * w
                    dv[i, 1] += dy * w
    return dv


def grid_size_for(n_nodes):
    return int(max(1, min(MAX_GRID_SIZE, round(n_nodes ** (1.0 / 3.0)))))


class ForceSimulation:
    """
    Force-directed position solver.

    Parameters:
    -----------
    node_ids : sequence of str
        Nodes to lay out, in a fixed order
    edges : iterable of (source, target)
        Springs between nodes; self-loops are ignored
    settings : LayoutSettings, optional
    positions : mapping, optional
        node_id -> (x, y) starting positions; nodes without finite values are
        placed randomly in a disc whose radius grows with sqrt(n)
    verbose : bool, default=False
    """

    def __init__(self, node_ids, edges, settings=None, positions=None, verbose=False):
        self.node_ids = list(node_ids)
        self.index = {node_id: i for i, node_id in enumerate(self.node_ids)}
        if len(self.index) != len(self.node_ids):
            raise ValidationError("Duplicate node ids in layout input")
        self.settings = as_layout_settings(settings)
        self.verbose = verbose
        self._rng = np.random.default_rng(self.settings.seed)

        sources, targets = [], []
        for source, target in edges:
            if source not in self.index or target not in self.index:
                raise ValidationError(f"Edge ({source}, {target}) references an unknown node")
            if source == target:
                continue
            sources.append(self.index[source])
            targets.append(self.index[target])
        self._link_source = np.asarray(sources, dtype=np.int64)
        self._link_target = np.asarray(targets, dtype=np.int64)
        self._configure_links()

        n = len(self.node_ids)
        self.positions = self._initial_positions(positions or {})
        self.velocities = np.zeros((n, 2))
        self.alpha = 1.0
        self.tick_count = 0

    @classmethod
    def from_view(cls, view, settings=None, verbose=False):
        """Simulation over every node and edge of a graph view, keeping stored positions."""
        node_ids = view.nodes()
        positions = {}
        for node_id in node_ids:
            attrs = view.node_attributes(node_id)
            if 'x' in attrs and 'y' in attrs:
                positions[node_id] = (attrs['x'], attrs['y'])
        edges = [(s, t) for _, s, t in view.edge_list()]
        return cls(node_ids, edges, settings=settings, positions=positions, verbose=verbose)

    def _configure_links(self):
        n = len(self.node_ids)
        count = np.bincount(np.concatenate([self._link_source, self._link_target]), minlength=n)
        count_s = count[self._link_source].astype(float)
        count_t = count[self._link_target].astype(float)
        self._link_strength = 1.0 / np.maximum(np.minimum(count_s, count_t), 1.0)
        total = count_s + count_t
        self._link_bias = np.divide(count_s, total, out=np.full_like(count_s, 0.5), where=total > 0)

    def _initial_positions(self, given):
        n = len(self.node_ids)
        positions = np.empty((n, 2))
        radius = 10.0 * math.sqrt(max(n, 1))
        missing = []
        for i, node_id in enumerate(self.node_ids):
            xy = given.get(node_id)
            if xy is not None and all(v is not None and np.isfinite(float(v)) for v in xy):
                positions[i] = (float(xy[0]), float(xy[1]))
            else:
                missing.append(i)
        if missing:
            positions[missing] = self._random_disc(len(missing), radius)
        return positions

    def _random_disc(self, count, radius):
        r = radius * np.sqrt(self._rng.random(count))
        angle = 2.0 * math.pi * self._rng.random(count)
        return np.column_stack([r * np.cos(angle), r * np.sin(angle)])

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    @property
    def converged(self):
        return self.alpha < self.settings.alpha_min

    def restart(self, alpha=1.0):
        self.alpha = float(alpha)

    def update_settings(self, settings):
        """
        Swap the force parameters and partially reheat. Reheating never
        lowers alpha, so repeating the same update is a no-op.
        """
        self.settings = self.settings.with_forces(settings)
        self.alpha = max(self.alpha, self.settings.reheat_alpha)
        return self.alpha

    # ------------------------------------------------------------------
    # Forces
    # ------------------------------------------------------------------
    def _apply_links(self, alpha):
        if self._link_source.size == 0:
            return
        s, t = self._link_source, self._link_target
        delta = (self.positions[t] + self.velocities[t]) - (self.positions[s] + self.velocities[s])
        zero = delta == 0.0
        if zero.any():
            delta[zero] = (self._rng.random(int(zero.sum())) - 0.5) * 1e-6
        length = np.sqrt((delta ** 2).sum(axis=1))
        k = (length - self.settings.link_distance) / length * alpha * self._link_strength
        delta *= k[:, None]
        np.add.at(self.velocities, t, -delta * self._link_bias[:, None])
        np.add.at(self.velocities, s, delta * (1.0 - self._link_bias)[:, None])

    def _apply_many_body(self, alpha):
        if self.settings.charge_strength == 0.0 or len(self.node_ids) < 2:
            return
        dv = _many_body_grid(
            self.positions,
            float(self.settings.charge_strength),
            float(alpha),
            float(self.settings.theta) ** 2,
            grid_size_for(len(self.node_ids)),
        )
        self.velocities += dv

    def _apply_collide(self):
        radius = self.settings.collide_radius
        if radius <= 0.0 or len(self.node_ids) < 2:
            return
        predicted = self.positions + self.velocities
        reach = 2.0 * radius
        pairs = cKDTree(predicted).query_pairs(reach, output_type='ndarray')
        if len(pairs) == 0:
            return
        i, j = pairs[:, 0], pairs[:, 1]
        delta = predicted[i] - predicted[j]
        length = np.sqrt((delta ** 2).sum(axis=1))
        coincident = length == 0.0
        if coincident.any():
            delta[coincident, 0] = (self._rng.random(int(coincident.sum())) - 0.5) * 1e-6
            length = np.sqrt((delta ** 2).sum(axis=1))
        inside = length < reach
        if not inside.any():
            return
        i, j, delta, length = i[inside], j[inside], delta[inside], length[inside]
        # Equal radii: the overlap is split evenly between both nodes
        delta *= ((reach - length) / length * 0.5)[:, None]
        np.add.at(self.velocities, i, delta)
        np.add.at(self.velocities, j, -delta)

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------
    def tick(self):
        """Advance one step and return the (n, 2) position array."""
        self.alpha += (0.0 - self.alpha) * self.settings.effective_alpha_decay
        alpha = self.alpha
        self._apply_links(alpha)
        self._apply_many_body(alpha)
        self._apply_collide()
        self.velocities *= 1.0 - self.settings.velocity_decay
        self.positions += self.velocities

        broken = ~np.isfinite(self.positions).all(axis=1)
        if broken.any():
            radius = 10.0 * math.sqrt(len(self.node_ids))
            self.positions[broken] = self._random_disc(int(broken.sum()), radius)
            self.velocities[broken] = 0.0
        self.tick_count += 1
        return self.positions

    def run(self, max_ticks=300):
        """Tick until converged or ``max_ticks`` steps were taken."""
        with perf_monitor.timed_operation("Force layout", verbose=self.verbose):
            start = self.tick_count
            while not self.converged and self.tick_count - start < max_ticks:
                self.tick()
        if self.verbose:
            state = "converged" if self.converged else "stopped"
            print(f"Layout {state} after {self.tick_count - start} ticks (alpha={self.alpha:.4f})")
        return self.positions

    def position_map(self):
        return {node_id: (float(x), float(y)) for node_id, (x, y) in zip(self.node_ids, self.positions)}

    def __str__(self):
        return (f"ForceSimulation with {len(self.node_ids)} nodes, "
                f"{self._link_source.size} links, alpha={self.alpha:.4f}")
