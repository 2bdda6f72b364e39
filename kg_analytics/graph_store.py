"""
GraphStore - Shared mutable directed multigraph for heterogeneous knowledge graphs.
"""
import threading

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components

from .errors import ValidationError

DEFAULT_NODE_TYPE = 'general'
DEFAULT_NODE_SIZE = 5.0

NODE_DEFAULTS = {
    'label': None,
    'node_type': DEFAULT_NODE_TYPE,
    'size': DEFAULT_NODE_SIZE,
    'color': None,
    'hidden': False,
    'community': None,
}
EDGE_DEFAULTS = {
    'score': None,
    'hidden': False,
    'color': None,
}

# Attribute scopes handed to the individual writers
POSITION_FIELDS = ('x', 'y')
ENCODING_FIELDS = ('size', 'color')
COMMUNITY_FIELDS = ('color', 'community')
VISIBILITY_FIELDS = ('hidden', 'type')


def _same(a, b):
    if a is b:
        return True
    try:
        return bool(a == b)
    except (TypeError, ValueError):
        return False


def _diff(before, after):
    changed = {f: v for f, v in after.items() if f not in before or not _same(before[f], v)}
    removed = [f for f in before if f not in after]
    return changed, removed


class GraphStore:
    """
    Core data structure holding the knowledge graph.

    Nodes and edges are keyed by unique string ids; every edge references an
    ordered (source, target) pair of existing nodes. Parallel and reciprocal
    edges are allowed. Attribute writes are serialized per entity: a single
    node or edge is never observed half-updated, and writers touching disjoint
    fields of the same entity never clobber each other.
    """

    def __init__(self):
        self._nodes = {}
        self._edges = {}
        self._endpoints = {}
        self._out_edges = {}
        self._in_edges = {}
        self._properties = {}
        self._structure_lock = threading.RLock()
        self._node_locks = {}
        self._edge_locks = {}

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------
    def add_node(self, node_id, **attributes):
        """
        Add a node.

        Parameters:
        -----------
        node_id : str
            Unique, stable identifier
        **attributes :
            Initial attributes; missing ones take NODE_DEFAULTS and the label
            defaults to the id.
        """
        with self._structure_lock:
            if node_id in self._nodes:
                raise ValidationError(f"Node '{node_id}' already exists")
            attrs = dict(NODE_DEFAULTS)
            attrs.update(attributes)
            if attrs.get('label') is None:
                attrs['label'] = node_id
            self._nodes[node_id] = attrs
            self._node_locks[node_id] = threading.Lock()
            self._out_edges[node_id] = {}
            self._in_edges[node_id] = {}
            self._properties[node_id] = {}

    def add_edge(self, edge_id, source, target, **attributes):
        """Add a directed edge between two existing nodes."""
        with self._structure_lock:
            if edge_id in self._edges:
                raise ValidationError(f"Edge '{edge_id}' already exists")
            for endpoint in (source, target):
                if endpoint not in self._nodes:
                    raise ValidationError(f"Edge '{edge_id}' references unknown node '{endpoint}'")
            attrs = dict(EDGE_DEFAULTS)
            attrs.update(attributes)
            self._edges[edge_id] = attrs
            self._edge_locks[edge_id] = threading.Lock()
            self._endpoints[edge_id] = (source, target)
            self._out_edges[source][edge_id] = None
            self._in_edges[target][edge_id] = None

    def drop_edge(self, edge_id):
        with self._structure_lock:
            self._require_edge(edge_id)
            source, target = self._endpoints.pop(edge_id)
            del self._edges[edge_id]
            del self._edge_locks[edge_id]
            self._out_edges[source].pop(edge_id, None)
            self._in_edges[target].pop(edge_id, None)

    def drop_node(self, node_id):
        """Remove a node together with every incident edge."""
        with self._structure_lock:
            self._require_node(node_id)
            for edge_id in list(self._out_edges[node_id]) + list(self._in_edges[node_id]):
                if edge_id in self._edges:
                    self.drop_edge(edge_id)
            del self._nodes[node_id]
            del self._node_locks[node_id]
            del self._out_edges[node_id]
            del self._in_edges[node_id]
            del self._properties[node_id]

    def has_node(self, node_id):
        return node_id in self._nodes

    def has_edge(self, edge_id):
        return edge_id in self._edges

    def nodes(self):
        with self._structure_lock:
            return list(self._nodes)

    def edges(self):
        with self._structure_lock:
            return list(self._edges)

    @property
    def order(self):
        return len(self._nodes)

    @property
    def size(self):
        return len(self._edges)

    def edge_endpoints(self, edge_id):
        self._require_edge(edge_id)
        return self._endpoints[edge_id]

    def edge_list(self):
        """List of (edge_id, source, target) tuples in insertion order."""
        with self._structure_lock:
            return [(e, s, t) for e, (s, t) in self._endpoints.items()]

    def _require_node(self, node_id):
        if node_id not in self._nodes:
            raise ValidationError(f"Node '{node_id}' not found in graph")

    def _require_edge(self, edge_id):
        if edge_id not in self._edges:
            raise ValidationError(f"Edge '{edge_id}' not found in graph")

    # ------------------------------------------------------------------
    # Neighbourhood queries
    # ------------------------------------------------------------------
    def neighbors(self, node_id):
        """Distinct neighbours over in- and out-edges, in insertion order."""
        self._require_node(node_id)
        with self._structure_lock:
            found = dict.fromkeys(self._endpoints[e][1] for e in self._out_edges[node_id])
            found.update(dict.fromkeys(self._endpoints[e][0] for e in self._in_edges[node_id]))
        found.pop(node_id, None)
        return list(found)

    def successors(self, node_id):
        """Distinct out-neighbours."""
        self._require_node(node_id)
        with self._structure_lock:
            found = dict.fromkeys(self._endpoints[e][1] for e in self._out_edges[node_id])
        found.pop(node_id, None)
        return list(found)

    def degree(self, node_id):
        """In + out edge count; parallel edges each count."""
        self._require_node(node_id)
        return len(self._out_edges[node_id]) + len(self._in_edges[node_id])

    def degrees(self):
        with self._structure_lock:
            return {n: len(self._out_edges[n]) + len(self._in_edges[n]) for n in self._nodes}

    # ------------------------------------------------------------------
    # Attribute access
    # ------------------------------------------------------------------
    def node_attributes(self, node_id):
        """Copy of the node's attribute mapping."""
        self._require_node(node_id)
        with self._node_locks[node_id]:
            return dict(self._nodes[node_id])

    def get_node_attribute(self, node_id, name, default=None):
        self._require_node(node_id)
        return self._nodes[node_id].get(name, default)

    def set_node_attribute(self, node_id, name, value):
        self.set_node_attributes(node_id, {name: value})

    def set_node_attributes(self, node_id, mapping):
        """Merge ``mapping`` into the node's attributes atomically."""
        lock = self._node_locks.get(node_id)
        if lock is None:
            raise ValidationError(f"Node '{node_id}' not found in graph")
        with lock:
            self._nodes[node_id].update(mapping)

    def set_many_node_attributes(self, updates):
        """
        Apply ``{node_id: {field: value}}`` updates, each node atomically.
        All ids are validated before anything is written.
        """
        unknown = [k for k in updates if k not in self._nodes]
        if unknown:
            raise ValidationError(f"Unknown nodes: {unknown[:5]}")
        for node_id, mapping in updates.items():
            lock = self._node_locks.get(node_id)
            if lock is None:
                continue  # dropped concurrently
            with lock:
                self._nodes[node_id].update(mapping)

    def edge_attributes(self, edge_id):
        self._require_edge(edge_id)
        with self._edge_locks[edge_id]:
            return dict(self._edges[edge_id])

    def get_edge_attribute(self, edge_id, name, default=None):
        self._require_edge(edge_id)
        return self._edges[edge_id].get(name, default)

    def set_edge_attribute(self, edge_id, name, value):
        self.set_edge_attributes(edge_id, {name: value})

    def set_edge_attributes(self, edge_id, mapping):
        lock = self._edge_locks.get(edge_id)
        if lock is None:
            raise ValidationError(f"Edge '{edge_id}' not found in graph")
        with lock:
            self._edges[edge_id].update(mapping)

    def update_each_node_attributes(self, transform, fields=None):
        """
        Bulk update of every node from a consistent snapshot.

        Parameters:
        -----------
        transform : callable
            ``transform(node_id, attrs) -> attrs``; receives a private copy of
            the snapshot and must return the new attribute mapping.
        fields : iterable of str, optional
            If given, only these fields may change. Violations raise
            ValidationError before anything is committed.

        Returns:
        --------
        int
            Number of nodes whose attributes changed
        """
        return self._update_each(self._nodes, self._node_locks, transform, fields, 'node')

    def update_each_edge_attributes(self, transform, fields=None):
        """Edge counterpart of update_each_node_attributes."""
        return self._update_each(self._edges, self._edge_locks, transform, fields, 'edge')

    def _update_each(self, table, locks, transform, fields, kind):
        allowed = None if fields is None else frozenset(fields)
        with self._structure_lock:
            keys = list(table)
            snapshot = {}
            for key in keys:
                with locks[key]:
                    snapshot[key] = dict(table[key])

            # Phase 1: run every transform against the snapshot, nothing is written yet
            pending = {}
            for key in keys:
                before = snapshot[key]
                after = transform(key, dict(before))
                if after is None:
                    raise ValidationError(f"Transform returned None for {kind} '{key}'")
                changed, removed = _diff(before, after)
                if not changed and not removed:
                    continue
                if allowed is not None:
                    illegal = (set(changed) | set(removed)) - allowed
                    if illegal:
                        raise ValidationError(
                            f"Writer may not modify {kind} fields {sorted(illegal)}"
                        )
                pending[key] = (changed, removed)

            # Phase 2: commit only the fields the transform touched
            for key, (changed, removed) in pending.items():
                with locks[key]:
                    attrs = table[key]
                    attrs.update(changed)
                    for name in removed:
                        attrs.pop(name, None)
        return len(pending)

    # ------------------------------------------------------------------
    # Per-node data properties (heterogeneous namespaces)
    # ------------------------------------------------------------------
    def set_node_properties(self, node_id, mapping, namespace='default'):
        self._require_node(node_id)
        with self._node_locks[node_id]:
            self._properties[node_id].setdefault(namespace, {}).update(mapping)

    def node_properties(self, node_id, namespace=None):
        """Properties of a node; a flat copy of one namespace, or all namespaces."""
        self._require_node(node_id)
        with self._node_locks[node_id]:
            spaces = self._properties[node_id]
            if namespace is not None:
                return dict(spaces.get(namespace, {}))
            return {ns: dict(values) for ns, values in spaces.items()}

    def property_values(self, name, namespace=None):
        """
        Mapping node_id -> raw value for every node that defines ``name``.
        Without a namespace the first namespace holding the property wins.
        """
        values = {}
        with self._structure_lock:
            for node_id, spaces in self._properties.items():
                if namespace is not None:
                    space = spaces.get(namespace, {})
                    if name in space:
                        values[node_id] = space[name]
                    continue
                for space in spaces.values():
                    if name in space:
                        values[node_id] = space[name]
                        break
        return values

    def property_names(self, namespace=None):
        names = {}
        with self._structure_lock:
            for spaces in self._properties.values():
                for ns, space in spaces.items():
                    if namespace is None or ns == namespace:
                        names.update(dict.fromkeys(space))
        return list(names)

    # ------------------------------------------------------------------
    # Matrix / frame exports
    # ------------------------------------------------------------------
    def adjacency(self, weighted=False, score_attribute='score', directed=False, exclude=None):
        """
        Sparse adjacency matrix of the graph.

        Parameters:
        -----------
        weighted : bool, default=False
            Use the edge score as weight (missing scores count as 1.0).
            Otherwise every connected pair has weight 1.0.
        score_attribute : str, default='score'
            Edge attribute holding the weight
        directed : bool, default=False
            If False, the undirected projection is returned: parallel and
            reciprocal edges merge into one symmetric entry, adding weights.
        exclude : iterable of str, optional
            Node ids whose incident edges are left out

        Returns:
        --------
        matrix : scipy.sparse.csr_matrix
            (n, n) matrix without self-loops
        index : list
            Node id for each row
        """
        skip = set(exclude or ())
        with self._structure_lock:
            index = list(self._nodes)
            position = {node: i for i, node in enumerate(index)}
            rows, cols, data = [], [], []
            for edge_id, (source, target) in self._endpoints.items():
                if source == target or source in skip or target in skip:
                    continue
                weight = 1.0
                if weighted:
                    score = self._edges[edge_id].get(score_attribute)
                    if score is not None:
                        try:
                            score = float(score)
                        except (TypeError, ValueError) as exc:
                            raise ValidationError(
                                f"Edge '{edge_id}' has a non-numeric {score_attribute} {score!r}"
                            ) from exc
                        if np.isfinite(score):
                            weight = score
                rows.append(position[source])
                cols.append(position[target])
                data.append(weight)

        n = len(index)
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        data = np.asarray(data, dtype=np.float64)
        if not directed:
            rows, cols = np.concatenate([rows, cols]), np.concatenate([cols, rows])
            data = np.concatenate([data, data])

        matrix = csr_matrix((data, (rows, cols)), shape=(n, n))
        matrix.sum_duplicates()
        if not weighted:
            matrix.data[:] = 1.0
        matrix.eliminate_zeros()
        return matrix, index

    def compute_components(self):
        """Connected components of the undirected projection as node-id lists."""
        matrix, index = self.adjacency()
        if not index:
            return []
        n_components, labels = connected_components(matrix, directed=False)
        components = [[] for _ in range(n_components)]
        for node_id, label in zip(index, labels):
            components[label].append(node_id)
        return components

    def node_frame(self, columns=None):
        """pandas.DataFrame snapshot of node attributes indexed by node id."""
        with self._structure_lock:
            rows = {}
            for node_id in self._nodes:
                with self._node_locks[node_id]:
                    rows[node_id] = dict(self._nodes[node_id])
        if not rows:
            return pd.DataFrame(columns=list(columns or NODE_DEFAULTS))
        frame = pd.DataFrame.from_dict(rows, orient='index')
        if columns is not None:
            frame = frame.reindex(columns=list(columns))
        return frame

    # ------------------------------------------------------------------
    # Capability views
    # ------------------------------------------------------------------
    def read_view(self):
        return ReadView(self)

    def writer(self, node_fields=(), edge_fields=()):
        return AttributeWriter(self, node_fields=node_fields, edge_fields=edge_fields)

    def __str__(self):
        return f"GraphStore with {self.order} nodes, {self.size} edges"

    def __repr__(self):
        return self.__str__()


def scoped_writer(target, node_fields=(), edge_fields=()):
    """Writer limited to the given fields; an AttributeWriter is passed through."""
    if isinstance(target, GraphStore):
        return target.writer(node_fields=node_fields, edge_fields=edge_fields)
    if isinstance(target, AttributeWriter):
        return target
    raise ValidationError(f"Expected a GraphStore or AttributeWriter, got {type(target).__name__}")


def as_view(target):
    """Read view over a GraphStore; views and writers are passed through."""
    if isinstance(target, GraphStore):
        return target.read_view()
    if isinstance(target, ReadView):
        return target
    raise ValidationError(f"Expected a GraphStore or ReadView, got {type(target).__name__}")


class ReadView:
    """Read-only facade over a GraphStore."""

    _READ_MEMBERS = frozenset({
        'has_node', 'has_edge', 'nodes', 'edges', 'order', 'size',
        'edge_endpoints', 'edge_list', 'neighbors', 'successors', 'degree', 'degrees',
        'node_attributes', 'get_node_attribute', 'edge_attributes', 'get_edge_attribute',
        'node_properties', 'property_values', 'property_names',
        'adjacency', 'compute_components', 'node_frame',
    })

    def __init__(self, store):
        self._store = store

    def __getattr__(self, name):
        if name in self._READ_MEMBERS:
            return getattr(self._store, name)
        raise AttributeError(f"'{type(self).__name__}' does not expose '{name}'")

    def read_view(self):
        return ReadView(self._store)

    def __repr__(self):
        return f"{type(self).__name__}({self._store})"


class AttributeWriter(ReadView):
    """
    Read view that may write only a fixed set of attribute fields.

    Parameters:
    -----------
    store : GraphStore
    node_fields : iterable of str
        Node attribute fields this writer owns
    edge_fields : iterable of str
        Edge attribute fields this writer owns
    """

    def __init__(self, store, node_fields=(), edge_fields=()):
        super().__init__(store)
        self.node_fields = frozenset(node_fields)
        self.edge_fields = frozenset(edge_fields)

    def _check(self, names, allowed, kind):
        illegal = set(names) - allowed
        if illegal:
            raise ValidationError(f"Writer may not modify {kind} fields {sorted(illegal)}")

    def set_node_attribute(self, node_id, name, value):
        self.set_node_attributes(node_id, {name: value})

    def set_node_attributes(self, node_id, mapping):
        self._check(mapping, self.node_fields, 'node')
        self._store.set_node_attributes(node_id, mapping)

    def set_many_node_attributes(self, updates):
        for mapping in updates.values():
            self._check(mapping, self.node_fields, 'node')
        self._store.set_many_node_attributes(updates)

    def update_each_node_attributes(self, transform):
        return self._store.update_each_node_attributes(transform, fields=self.node_fields)

    def set_edge_attribute(self, edge_id, name, value):
        self._check([name], self.edge_fields, 'edge')
        self._store.set_edge_attributes(edge_id, {name: value})

    def update_each_edge_attributes(self, transform):
        return self._store.update_each_edge_attributes(transform, fields=self.edge_fields)
