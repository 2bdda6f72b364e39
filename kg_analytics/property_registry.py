"""
Typed registry of node data properties.

Each property is declared with a semantic kind; the visual encoder picks its
transform and scales from that kind.
"""
import re
from dataclasses import dataclass
from typing import Dict, Literal, Optional, Tuple

from .errors import ValidationError

PropertyKind = Literal[
    'continuous',      # any real number, linear min..max
    'bounded_ratio',   # scores in [0, 1]
    'p_value',         # scaled after -log10
    'differential',    # signed fold change, diverging around 0
    'signed_score',    # prioritisation score fixed to [-1, 1]
    'membership',      # 0/1 flags, several may be selected
    'custom_color',    # '#RRGGBB' strings
]

PROPERTY_KINDS = (
    'continuous', 'bounded_ratio', 'p_value', 'differential',
    'signed_score', 'membership', 'custom_color',
)

# Used only when declaring columns from a table header
_P_VALUE_COLUMN = re.compile(r'^(p[-_ ]?val(ue)?|padj|fdr|q[-_ ]?val(ue)?)|(p[-_ ]?val(ue)?|padj|fdr)$',
                             re.IGNORECASE)


@dataclass(frozen=True)
class PropertySpec:
    name: str
    kind: PropertyKind = 'continuous'
    namespace: Optional[str] = None
    node_types: Optional[Tuple[str, ...]] = None  # None: every node type

    def __post_init__(self):
        if self.kind not in PROPERTY_KINDS:
            raise ValidationError(f"Unknown property kind '{self.kind}'")

    @property
    def numeric(self):
        return self.kind not in ('membership', 'custom_color')

    def applies_to(self, node_type):
        return self.node_types is None or node_type in self.node_types


class PropertyRegistry:
    """
    Declarations of the properties each node type carries.

    Lookup order for ``resolve(name, namespace)``: an explicit declaration of
    the name in that namespace, then the namespace default kind, then any
    declaration of the name, and finally an undeclared ``continuous`` spec.
    """

    def __init__(self):
        self._specs: Dict[Tuple[Optional[str], str], PropertySpec] = {}
        self._namespaces: Dict[str, PropertySpec] = {}

    def declare(self, name, kind='continuous', namespace=None, node_types=None):
        spec = PropertySpec(name, kind, namespace, tuple(node_types) if node_types else None)
        self._specs[(namespace, name)] = spec
        return spec

    def declare_namespace(self, namespace, kind, node_types=None):
        """Default kind for every property stored under ``namespace``."""
        spec = PropertySpec('*', kind, namespace, tuple(node_types) if node_types else None)
        self._namespaces[namespace] = spec
        return spec

    def declare_columns(self, namespace, columns):
        """
        Declare table columns loaded into ``namespace``. Inside a differential
        namespace, p-value columns are recognised from their header once here.
        """
        default = self._namespaces.get(namespace)
        declared = []
        for column in columns:
            kind = default.kind if default is not None else 'continuous'
            if kind == 'differential' and _P_VALUE_COLUMN.search(column):
                kind = 'p_value'
            node_types = default.node_types if default is not None else None
            declared.append(self.declare(column, kind, namespace, node_types))
        return declared

    def namespaces(self):
        return list(self._namespaces)

    def resolve(self, name, namespace=None):
        if (namespace, name) in self._specs:
            return self._specs[(namespace, name)]
        if namespace in self._namespaces:
            default = self._namespaces[namespace]
            return PropertySpec(name, default.kind, namespace, default.node_types)
        for (_, declared_name), spec in self._specs.items():
            if declared_name == name and namespace is None:
                return spec
        return PropertySpec(name, 'continuous', namespace, None)

    def __contains__(self, name):
        return any(declared_name == name for _, declared_name in self._specs)

    def __len__(self):
        return len(self._specs)


def default_registry():
    """Registry with the gene data namespaces of the knowledge graph explorer."""
    registry = PropertyRegistry()
    genes = ('Gene',)
    registry.declare_namespace('OpenTargets', 'bounded_ratio', genes)
    registry.declare_namespace('Druggability', 'bounded_ratio', genes)
    registry.declare_namespace('TE', 'continuous', genes)
    registry.declare_namespace('DEG', 'differential', genes)
    registry.declare_namespace('OT_Prioritization', 'signed_score', genes)
    registry.declare_namespace('Pathway', 'membership', genes)
    registry.declare_namespace('Custom_Color', 'custom_color', genes)
    return registry
