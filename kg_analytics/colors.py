"""
Colour constants, type colour assignment and linear scales.
"""
import colorsys
import re
from collections import Counter

import numpy as np
from matplotlib.colors import to_hex, to_rgb

from .errors import ValidationError
from .graph_store import DEFAULT_NODE_TYPE

DEFAULT_NODE_COLOR = '#6b7280'
DEFAULT_EDGE_COLOR = '#d1d5db'

PREDEFINED_TYPE_COLORS = {
    'Gene': '#3b82f6',
    'Disease': '#ef4444',
    'Protein': '#10b981',
    'Pathways': '#f59e0b',
    'Drug': '#8b5cf6',
    'Phenotypes': '#ec4899',
    'Tissue': '#06b6d4',
    'CellType': '#14b8a6',
}

DYNAMIC_COLOR_PALETTE = [
    '#ef4444', '#f97316', '#f59e0b', '#eab308', '#84cc16',
    '#22c55e', '#10b981', '#14b8a6', '#06b6d4', '#0ea5e9',
    '#3b82f6', '#6366f1', '#8b5cf6', '#a855f7', '#d946ef',
    '#ec4899', '#f43f5e', '#fb7185', '#fda4af', '#fbbf24',
    '#a3e635', '#4ade80', '#34d399', '#2dd4bf', '#22d3ee',
    '#38bdf8', '#60a5fa', '#818cf8', '#a78bfa', '#c084fc',
    '#e879f9', '#f472b6', '#fb923c', '#fdba74', '#fcd34d',
    '#bef264', '#86efac', '#6ee7b7', '#5eead4', '#7dd3fc',
    '#93c5fd', '#a5b4fc', '#c4b5fd', '#d8b4fe', '#f0abfc',
    '#f9a8d4', '#fca5a5', '#fed7aa', '#fde68a', '#d9f99d',
]

GOLDEN_ANGLE = 137.508

_HEX_COLOR = re.compile(r'^#[0-9A-Fa-f]{6}$')


def is_hex_color(value):
    return isinstance(value, str) and bool(_HEX_COLOR.match(value))


def hsl_to_hex(hue, saturation, lightness):
    """Convert HSL (degrees, percent, percent) to a '#rrggbb' string."""
    r, g, b = colorsys.hls_to_rgb((hue % 360) / 360.0, lightness / 100.0, saturation / 100.0)
    return to_hex((r, g, b))


def golden_angle_color(rank, saturation=75, lightness=50):
    """Deterministic, well-spread colour for the community with the given 0-based rank."""
    return hsl_to_hex((rank + 1) * GOLDEN_ANGLE, saturation, lightness)


def generate_type_color_map(view):
    """
    Map every node type in the graph to a colour.

    Predefined types keep their fixed colour; the remaining types take palette
    entries in descending order of frequency, and types beyond the palette
    fall back to the default grey.
    """
    counts = Counter(
        view.get_node_attribute(node, 'node_type') or DEFAULT_NODE_TYPE for node in view.nodes()
    )
    color_map = {}
    palette_index = 0
    for node_type, _ in sorted(counts.items(), key=lambda item: -item[1]):
        if node_type in PREDEFINED_TYPE_COLORS:
            color_map[node_type] = PREDEFINED_TYPE_COLORS[node_type]
        elif palette_index < len(DYNAMIC_COLOR_PALETTE):
            color_map[node_type] = DYNAMIC_COLOR_PALETTE[palette_index]
            palette_index += 1
        else:
            color_map[node_type] = DEFAULT_NODE_COLOR
    return color_map


def edge_color_with_opacity(opacity, base=DEFAULT_EDGE_COLOR):
    """'rgba(r, g, b, a)' string for the base colour at the given opacity."""
    if not 0.0 <= opacity <= 1.0:
        raise ValidationError(f"opacity must be in [0, 1], got {opacity}")
    r, g, b = (int(round(c * 255)) for c in to_rgb(base))
    return f"rgba({r}, {g}, {b}, {opacity:g})"


class LinearScale:
    """
    Piecewise-linear numeric scale, clamped to its range.

    Parameters:
    -----------
    domain : sequence of float
        Two or more breakpoints (ascending or descending)
    range_ : sequence of float
        Output value at each breakpoint
    """

    def __init__(self, domain, range_):
        domain = np.asarray(domain, dtype=float)
        values = np.asarray(range_, dtype=float)
        if domain.shape != values.shape or domain.size < 2:
            raise ValueError("domain and range must have the same length (>= 2)")
        if domain[0] > domain[-1]:
            domain, values = domain[::-1], values[::-1]
        self.domain = domain
        self.range = values

    @property
    def degenerate(self):
        return self.domain[0] == self.domain[-1]

    def __call__(self, value):
        if self.degenerate:
            midpoint = (self.range[0] + self.range[-1]) / 2.0
            return np.full(np.shape(value), midpoint) if np.ndim(value) else float(midpoint)
        result = np.interp(value, self.domain, self.range)
        return result if np.ndim(value) else float(result)


class LinearColorScale:
    """Piecewise-linear colour scale interpolating in RGB; returns '#rrggbb'."""

    def __init__(self, domain, colors):
        if len(domain) != len(colors):
            raise ValueError("domain and colors must have the same length")
        rgb = np.array([to_rgb(c) for c in colors])
        self._channels = [LinearScale(domain, rgb[:, i]) for i in range(3)]
        self.colors = list(colors)

    def __call__(self, value):
        rgb = [min(max(channel(float(value)), 0.0), 1.0) for channel in self._channels]
        return to_hex(rgb)
