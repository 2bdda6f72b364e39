"""
Property-driven node size and colour encoding.
"""
import math
import numbers
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from .colors import (DEFAULT_NODE_COLOR, LinearColorScale, LinearScale, edge_color_with_opacity,
                     generate_type_color_map, is_hex_color)
from .core_utilities import perf_monitor
from .errors import ValidationError
from .graph_store import DEFAULT_NODE_TYPE, ENCODING_FIELDS, as_view, scoped_writer
from .property_registry import default_registry

LOW_COLOR = 'green'
HIGH_COLOR = 'red'
DIVERGING_MID_COLOR = '#E2E2E2'
PRIORITY_MID_COLOR = '#F0C584'
MEMBERSHIP_COLOR = '#ff0000'


@dataclass
class EncoderSettings:
    default_node_size: float = 5.0
    missing_size: float = 0.5
    missing_color: str = '#3b82f6'
    size_span: float = 10.0
    min_size: float = 3.0

    def __post_init__(self):
        if self.default_node_size <= 0 or self.min_size <= 0 or self.size_span <= 0:
            raise ValidationError("Node sizes must be positive")
        if self.missing_size <= 0:
            raise ValidationError("missing_size must be positive")
        if not is_hex_color(self.missing_color):
            raise ValidationError(f"missing_color must be '#RRGGBB', got {self.missing_color!r}")

    @property
    def max_size(self):
        return self.default_node_size + self.size_span


@dataclass
class EncodingResult:
    channel: str
    properties: Tuple[str, ...]
    kind: str
    domain: Optional[Tuple[float, ...]] = None
    encoded: int = 0
    missing: int = 0
    values: Dict[str, object] = field(default_factory=dict)


def as_number(value):
    """Finite float for numeric-like values; None for missing, NaN, inf and booleans."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, numbers.Real):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


class VisualEncoder:
    """
    Maps node data properties onto ``size`` and ``color``.

    The transform and scale are chosen from the property's declared kind in
    the registry. Nodes outside the property's node types are left alone;
    nodes inside without a usable value get the fallback size or colour.

    Parameters:
    -----------
    registry : PropertyRegistry, optional
        Defaults to the gene data namespaces
    settings : EncoderSettings, optional
    verbose : bool, default=False
    """

    def __init__(self, registry=None, settings=None, verbose=False):
        self.registry = registry or default_registry()
        self.settings = settings or EncoderSettings()
        self.verbose = verbose

    # ------------------------------------------------------------------
    # Input handling
    # ------------------------------------------------------------------
    @staticmethod
    def _names(selected):
        if isinstance(selected, str):
            return (selected,)
        names = tuple(selected)
        if not all(isinstance(n, str) for n in names):
            raise ValidationError("Selected properties must be strings")
        return names

    def _spec(self, names, namespace):
        specs = [self.registry.resolve(n, namespace) for n in names]
        kinds = {s.kind for s in specs}
        if len(kinds) > 1:
            raise ValidationError(f"Selected properties mix kinds {sorted(kinds)}")
        return specs[0]

    @staticmethod
    def _collect(view, names, values_by_node, namespace):
        """node_id -> {property: raw value} for the selected properties."""
        collected = {}
        if values_by_node is None:
            for name in names:
                for node_id, value in view.property_values(name, namespace).items():
                    collected.setdefault(node_id, {})[name] = value
            return collected
        for node_id, entry in values_by_node.items():
            if isinstance(entry, Mapping):
                collected[node_id] = {n: entry[n] for n in names if n in entry}
            elif len(names) == 1:
                collected[node_id] = {names[0]: entry}
            else:
                raise ValidationError("Multi-property selections need node -> {property: value} mappings")
        return collected

    @staticmethod
    def _transform(kind, value, channel):
        number = as_number(value)
        if number is None:
            return None
        if kind == 'p_value':
            # -log10 is undefined at 0 and below
            return -math.log10(number) if number > 0 else None
        if kind == 'differential' and channel == 'size':
            return abs(number)
        return number

    def _numeric_values(self, spec, collected, channel):
        values = {}
        for node_id, entry in collected.items():
            numbers_ = [self._transform(spec.kind, v, channel) for v in entry.values()]
            numbers_ = [n for n in numbers_ if n is not None]
            if numbers_:
                values[node_id] = max(numbers_)
        return values

    @staticmethod
    def _scoped_nodes(view, spec):
        for node_id in view.nodes():
            if spec.applies_to(view.get_node_attribute(node_id, 'node_type') or DEFAULT_NODE_TYPE):
                yield node_id

    @staticmethod
    def _commit(writer, channel, planned, encoded, names, kind, domain):
        """Write the planned attribute values in one bulk pass."""
        def assign(node_id, attrs):
            if node_id in planned:
                attrs[channel] = planned[node_id]
            return attrs

        writer.update_each_node_attributes(assign)
        hits = sum(1 for node_id in planned if node_id in encoded)
        return EncodingResult(channel, names, kind, domain, encoded=hits,
                              missing=len(planned) - hits, values=planned)

    # ------------------------------------------------------------------
    # Scales
    # ------------------------------------------------------------------
    def size_scale(self, kind, values):
        """(scale, domain) for a size encoding of the given transformed values."""
        s = self.settings
        if kind == 'signed_score':
            low = max(s.default_node_size - s.size_span, 1.0)
            domain = (-1.0, 0.0, 1.0)
            return LinearScale(domain, (low, s.default_node_size, s.max_size)), domain
        if kind in ('p_value', 'differential'):
            domain = (0.0, max(values) if values else 0.0)
        else:
            domain = (min(values), max(values)) if values else (0.0, 0.0)
        return LinearScale(domain, (s.min_size, s.max_size)), domain

    @staticmethod
    def color_scale(kind, values):
        """(scale, domain) for a colour encoding of the given transformed values."""
        if kind == 'signed_score':
            domain = (-1.0, 0.0, 1.0)
            return LinearColorScale(domain, (HIGH_COLOR, PRIORITY_MID_COLOR, LOW_COLOR)), domain
        lo = min(values) if values else 0.0
        hi = max(values) if values else 0.0
        if kind == 'differential':
            lo, hi = min(lo, 0.0), max(hi, 0.0)
            if lo == 0.0 and hi == 0.0:
                domain = (0.0, 0.0)
                return LinearColorScale(domain, (DIVERGING_MID_COLOR, DIVERGING_MID_COLOR)), domain
            if lo == 0.0:
                domain = (0.0, hi)
                return LinearColorScale(domain, (DIVERGING_MID_COLOR, HIGH_COLOR)), domain
            if hi == 0.0:
                domain = (lo, 0.0)
                return LinearColorScale(domain, (LOW_COLOR, DIVERGING_MID_COLOR)), domain
            domain = (lo, 0.0, hi)
            return LinearColorScale(domain, (LOW_COLOR, DIVERGING_MID_COLOR, HIGH_COLOR)), domain
        domain = (lo, hi)
        return LinearColorScale(domain, (LOW_COLOR, HIGH_COLOR)), domain

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------
    def encode_size(self, target, selected_property, property_values_by_node=None, namespace=None):
        """
        Scale node sizes by a numeric property.

        Parameters:
        -----------
        target : GraphStore or encoding AttributeWriter
        selected_property : str or sequence of str
            Several names take the per-node maximum
        property_values_by_node : mapping, optional
            node_id -> value, or node_id -> {property: value}. Read from the
            graph's property store when omitted.
        namespace : str, optional
            Property namespace used for kind lookup and store reads
        """
        writer = scoped_writer(target, node_fields=ENCODING_FIELDS)
        names = self._names(selected_property)
        if not names:
            self.clear_size(writer)
            return EncodingResult('size', (), 'continuous')
        spec = self._spec(names, namespace)
        if not spec.numeric:
            raise ValidationError(f"Property kind '{spec.kind}' cannot drive node size")

        with perf_monitor.timed_operation(f"Size encoding ({', '.join(names)})", verbose=self.verbose):
            collected = self._collect(writer, names, property_values_by_node, namespace)
            values = self._numeric_values(spec, collected, 'size')
            scale, domain = self.size_scale(spec.kind, list(values.values()))
            planned = {}
            for node_id in self._scoped_nodes(writer, spec):
                planned[node_id] = scale(values[node_id]) if node_id in values else self.settings.missing_size
            result = self._commit(writer, 'size', planned, values, names, spec.kind, domain)
        if self.verbose:
            print(f"Sized {result.encoded} nodes by {', '.join(names)} over {domain}; "
                  f"{result.missing} without data")
        return result

    def encode_color(self, target, selected_property, property_values_by_node=None, namespace=None,
                     community_result=None):
        """
        Colour nodes by a property; arguments as for encode_size. An empty
        selection restores colours like ``clear_color(target, community_result)``.
        """
        writer = scoped_writer(target, node_fields=ENCODING_FIELDS)
        names = self._names(selected_property)
        if not names:
            self.clear_color(writer, community_result)
            return EncodingResult('color', (), 'continuous')
        spec = self._spec(names, namespace)
        type_colors = generate_type_color_map(writer)

        def fallback(attrs):
            if spec.node_types is not None:
                return self.settings.missing_color
            node_type = attrs.get('node_type') or DEFAULT_NODE_TYPE
            return type_colors.get(node_type, DEFAULT_NODE_COLOR)

        with perf_monitor.timed_operation(f"Color encoding ({', '.join(names)})", verbose=self.verbose):
            collected = self._collect(writer, names, property_values_by_node, namespace)
            if spec.kind == 'membership':
                colors = {
                    node_id: MEMBERSHIP_COLOR
                    for node_id, entry in collected.items()
                    if any(as_number(v) for v in entry.values())
                }
                domain = None
            elif spec.kind == 'custom_color':
                colors = {}
                for node_id, entry in collected.items():
                    valid = [v for v in entry.values() if is_hex_color(v)]
                    if valid:
                        colors[node_id] = valid[0]
                domain = None
            else:
                values = self._numeric_values(spec, collected, 'color')
                scale, domain = self.color_scale(spec.kind, list(values.values()))
                colors = {node_id: scale(v) for node_id, v in values.items()}

            planned = {}
            for node_id in self._scoped_nodes(writer, spec):
                planned[node_id] = colors.get(node_id) or fallback(writer.node_attributes(node_id))
            result = self._commit(writer, 'color', planned, colors, names, spec.kind, domain)
        if self.verbose:
            print(f"Coloured {result.encoded} nodes by {', '.join(names)}; {result.missing} without data")
        return result

    # ------------------------------------------------------------------
    # Clearing
    # ------------------------------------------------------------------
    def clear_size(self, target):
        """Restore every node to the default size."""
        writer = scoped_writer(target, node_fields=ENCODING_FIELDS)
        size = self.settings.default_node_size

        def reset(node_id, attrs):
            attrs['size'] = size
            return attrs

        return writer.update_each_node_attributes(reset)

    def clear_color(self, target, community_result=None):
        """
        Restore node colours: community members get their community colour
        (when the last clustering result is given), all others their type colour.
        """
        writer = scoped_writer(target, node_fields=ENCODING_FIELDS)
        type_colors = generate_type_color_map(writer)
        community_colors = community_result.colors if community_result is not None else {}

        def reset(node_id, attrs):
            if node_id in community_colors:
                attrs['color'] = community_colors[node_id]
            else:
                node_type = attrs.get('node_type') or DEFAULT_NODE_TYPE
                attrs['color'] = type_colors.get(node_type, DEFAULT_NODE_COLOR)
            return attrs

        return writer.update_each_node_attributes(reset)

    def apply_edge_opacity(self, target, opacity):
        """Set every edge to the default edge colour at the given opacity."""
        writer = scoped_writer(target, edge_fields=('color',))
        color = edge_color_with_opacity(opacity)

        def recolor(edge_id, attrs):
            attrs['color'] = color
            return attrs

        return writer.update_each_edge_attributes(recolor)
