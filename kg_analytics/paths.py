"""
Simple-path enumeration and degree-weighted path counts (DWPC) over typed nodes.

DWPC(s, t) = sum over paths p of prod over intermediate nodes i of d_i ** -w,
where d_i is the metapath-specific degree of i and w the damping exponent
(Himmelstein & Baranzini, PLoS Comput Biol 2015).
"""
import math
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .core_utilities import SearchBudget, perf_monitor
from .errors import ComputationError, ValidationError
from .graph_store import DEFAULT_NODE_TYPE, as_view

_CAMEL_CASE_KEYS = {
    'maxHops': 'max_hops',
    'maxPaths': 'max_paths',
    'timeoutMs': 'timeout_ms',
    'timeout': 'timeout_ms',
}

DEFAULT_TIMEOUT_MS = 30000


@dataclass
class DWPCOptions:
    source: str
    target: str
    max_hops: int
    damping: float = 0.4
    max_paths: int = 10000
    timeout_ms: float = DEFAULT_TIMEOUT_MS
    directed: bool = False

    def __post_init__(self):
        if isinstance(self.max_hops, bool) or not isinstance(self.max_hops, int):
            raise ValidationError(f"max_hops must be an integer, got {self.max_hops!r}")
        if self.max_hops < 2:
            raise ValidationError("Maximum hops must be at least 2")
        if not math.isfinite(self.damping) or self.damping < 0:
            raise ValidationError("damping must be a finite number >= 0")
        if self.max_paths < 1:
            raise ValidationError("max_paths must be >= 1")
        if not self.timeout_ms > 0:
            raise ValidationError("timeout_ms must be > 0")

    @classmethod
    def from_dict(cls, data):
        kwargs = {_CAMEL_CASE_KEYS.get(k, k): v for k, v in data.items()}
        try:
            return cls(**kwargs)
        except TypeError as exc:
            raise ValidationError(f"Invalid DWPC options: {exc}") from exc


@dataclass
class PathResult:
    path: List[str]
    labels: List[str]
    length: int
    node_types: List[str]
    exists: bool = True

    def to_dict(self):
        return {
            'path': list(self.path),
            'labels': list(self.labels),
            'length': self.length,
            'nodeTypes': list(self.node_types),
            'exists': self.exists,
        }


class FoundPaths(list):
    """List of PathResult that also records whether the search hit its deadline."""

    def __init__(self, paths=(), timed_out=False):
        super().__init__(paths)
        self.timed_out = timed_out


@dataclass
class ScoredPath:
    nodes: List[str]
    labels: List[str]
    node_types: List[str]
    weight: float

    def to_dict(self):
        return {
            'nodes': list(self.nodes),
            'labels': list(self.labels),
            'nodeTypes': list(self.node_types),
            'weight': self.weight,
        }


@dataclass
class DWPCResult:
    dwpc_score: float
    path_count: int
    paths: List[ScoredPath]
    all_metapaths: List[Tuple[str, ...]]
    damping: float
    timed_out: bool = False
    min_hops_needed: Optional[int] = None
    primary_metapath: Optional[Tuple[str, ...]] = None
    elapsed_ms: float = 0.0
    metapath_counts: dict = field(default_factory=dict)

    def to_message(self):
        message = {
            'dwpcScore': self.dwpc_score,
            'pathCount': self.path_count,
            'paths': [p.to_dict() for p in self.paths],
            'allMetapaths': [list(m) for m in self.all_metapaths],
            'damping': self.damping,
            'timedOut': self.timed_out,
        }
        if self.min_hops_needed is not None:
            message['minHopsNeeded'] = self.min_hops_needed
        return message


def iter_simple_paths(view, source, target, max_depth, budget=None, directed=False, excluded=()):
    """
    Yield simple paths from ``source`` to ``target`` with at most ``max_depth`` edges.

    Iterative depth-first search; the budget deadline is checked on every
    expansion step so enumeration stops promptly once it has expired.
    Nodes in ``excluded`` are never used as intermediate hops.
    """
    if source == target or max_depth < 1:
        return
    neighbors = view.successors if directed else view.neighbors
    blocked = frozenset(excluded)
    path = [source]
    on_path = {source}
    stack = [iter(neighbors(source))]
    while stack:
        if budget is not None and budget.expired():
            return
        child = next(stack[-1], None)
        if child is None:
            stack.pop()
            on_path.discard(path.pop())
            continue
        if child in on_path:
            continue
        if child == target:
            yield path + [target]
            continue
        if len(path) < max_depth and child not in blocked:
            path.append(child)
            on_path.add(child)
            stack.append(iter(neighbors(child)))


class PathEngine:
    """
    Path and metapath queries over a graph view.

    Parameters:
    -----------
    clock : callable, optional
        Monotonic clock (seconds) used for search deadlines
    verbose : bool, default=False
    """

    def __init__(self, clock=time.monotonic, verbose=False):
        self._clock = clock
        self.verbose = verbose

    @staticmethod
    def _require_nodes(view, source, target):
        if not view.has_node(source):
            raise ValidationError(f"Source node '{source}' not found in graph")
        if not view.has_node(target):
            raise ValidationError(f"Target node '{target}' not found in graph")

    @staticmethod
    def _node_type(view, node_id):
        return view.get_node_attribute(node_id, 'node_type') or DEFAULT_NODE_TYPE

    def _describe(self, view, nodes):
        labels = [view.get_node_attribute(n, 'label') or n for n in nodes]
        types = [self._node_type(view, n) for n in nodes]
        return labels, types

    # ------------------------------------------------------------------
    # Unconstrained enumeration
    # ------------------------------------------------------------------
    def _budget(self, max_paths, timeout_ms):
        if max_paths < 1:
            raise ValidationError("max_paths must be at least 1")
        if timeout_ms is not None and not timeout_ms > 0:
            raise ValidationError("timeout_ms must be > 0")
        return SearchBudget(max_results=max_paths, timeout_ms=timeout_ms, clock=self._clock)

    def _results(self, view, found, budget):
        results = FoundPaths(timed_out=budget.timed_out)
        for nodes in found:
            labels, types = self._describe(view, nodes)
            results.append(PathResult(nodes, labels, len(nodes) - 1, types))
        return results

    def find_all_paths(self, view, source, target, max_depth=5, max_paths=1000,
                       directed=False, excluded_nodes=(), timeout_ms=DEFAULT_TIMEOUT_MS):
        """
        All simple paths of at most ``max_depth`` edges, shortest first.

        Parameters:
        -----------
        timeout_ms : float or None, default=30000
            Wall-clock bound on the search; None disables it

        Returns:
        --------
        FoundPaths
            List of PathResult; ``timed_out`` is set when the deadline stopped
            the search, in which case it holds the paths found until then.
        """
        view = as_view(view)
        self._require_nodes(view, source, target)
        if max_depth < 1:
            raise ValidationError("max_depth must be at least 1")
        budget = self._budget(max_paths, timeout_ms)

        found = []
        with perf_monitor.timed_operation("Path enumeration", verbose=self.verbose):
            for nodes in iter_simple_paths(view, source, target, max_depth, budget,
                                           directed=directed, excluded=excluded_nodes):
                found.append(nodes)
                budget.accept()
                if budget.full:
                    break

        results = self._results(view, found, budget)
        results.sort(key=lambda r: r.length)
        if self.verbose:
            flag = " [TIMEOUT]" if results.timed_out else ""
            print(f"Found {len(results)} paths between {source} and {target} (max depth {max_depth}){flag}")
        return results

    # ------------------------------------------------------------------
    # Metapath-constrained enumeration
    # ------------------------------------------------------------------
    def _check_metapath(self, view, source, target, metapath):
        if isinstance(metapath, str) or len(metapath) < 2:
            raise ComputationError(f"Malformed metapath {metapath!r}: need at least two node types")
        if not all(isinstance(t, str) and t for t in metapath):
            raise ComputationError(f"Malformed metapath {metapath!r}: node types must be non-empty strings")
        if metapath[0] != self._node_type(view, source):
            raise ComputationError(
                f"Metapath starts with '{metapath[0]}' but source is a '{self._node_type(view, source)}'"
            )
        if metapath[-1] != self._node_type(view, target):
            raise ComputationError(
                f"Metapath ends with '{metapath[-1]}' but target is a '{self._node_type(view, target)}'"
            )

    def find_paths_with_metapath(self, view, source, target, metapath, max_paths=10,
                                 excluded_nodes=(), timeout_ms=DEFAULT_TIMEOUT_MS):
        """
        Simple paths whose node types follow ``metapath`` position by position.
        Returns FoundPaths, flagged ``timed_out`` like ``find_all_paths``.
        """
        view = as_view(view)
        self._require_nodes(view, source, target)
        metapath = tuple(metapath)
        self._check_metapath(view, source, target, metapath)
        budget = self._budget(max_paths, timeout_ms)

        blocked = frozenset(excluded_nodes)
        last = len(metapath) - 1
        found = []
        path = [source]
        on_path = {source}
        stack = [iter(view.neighbors(source))]
        while stack and not budget.full:
            if budget.expired():
                break
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                on_path.discard(path.pop())
                continue
            depth = len(path)  # index of ``child`` in the metapath
            if child in on_path or self._node_type(view, child) != metapath[depth]:
                continue
            if depth == last:
                if child == target:
                    found.append(path + [child])
                    budget.accept()
                continue
            if child == target or child in blocked:
                continue
            path.append(child)
            on_path.add(child)
            stack.append(iter(view.neighbors(child)))

        return self._results(view, found, budget)

    # ------------------------------------------------------------------
    # Degrees and estimates
    # ------------------------------------------------------------------
    def metapath_degree(self, view, node_id, metapath_types):
        """Distinct neighbours whose type is in the metapath; 0 if the node's own type is not."""
        types = metapath_types if isinstance(metapath_types, (set, frozenset)) else frozenset(metapath_types)
        if self._node_type(view, node_id) not in types:
            return 0
        return sum(1 for n in view.neighbors(node_id) if self._node_type(view, n) in types)

    def metapath_degrees(self, view, metapath):
        """Metapath-specific degree of every node in the graph."""
        view = as_view(view)
        types = frozenset(metapath)
        return {node_id: self.metapath_degree(view, node_id, types) for node_id in view.nodes()}

    def estimate_path_count(self, view, metapath):
        """Rough path count: mean per-type average degree raised to len(metapath) - 1."""
        view = as_view(view)
        if len(metapath) < 2:
            return 0.0
        types = set(metapath)
        per_type = {}
        for node_id in view.nodes():
            node_type = self._node_type(view, node_id)
            if node_type in types:
                per_type.setdefault(node_type, []).append(len(view.neighbors(node_id)))
        if not per_type:
            return 0.0
        averages = [sum(d) / len(d) for d in per_type.values()]
        return (sum(averages) / len(averages)) ** (len(metapath) - 1)

    def min_hops_needed(self, view, source, target, limit, directed=False, excluded_nodes=()):
        """Shortest hop count from source to target if it is at most ``limit``, else None."""
        neighbors = view.successors if directed else view.neighbors
        blocked = frozenset(excluded_nodes)
        seen = {source}
        frontier = deque([(source, 0)])
        while frontier:
            node_id, hops = frontier.popleft()
            if hops >= limit:
                continue
            for child in neighbors(node_id):
                if child == target:
                    return hops + 1
                if child in seen or child in blocked:
                    continue
                seen.add(child)
                frontier.append((child, hops + 1))
        return None

    # ------------------------------------------------------------------
    # DWPC
    # ------------------------------------------------------------------
    @staticmethod
    def path_weight(nodes, degree_of, damping):
        """Product of degree ** -damping over intermediate nodes; 0 if any degree is 0."""
        weight = 1.0
        for node_id in nodes[1:-1]:
            degree = degree_of(node_id)
            if degree == 0:
                return 0.0
            weight *= degree ** -damping
        return weight

    def compute_dwpc(self, view, options, excluded_nodes=()):
        """
        Degree-weighted path count between two nodes.

        Parameters:
        -----------
        view : GraphStore or ReadView
        options : DWPCOptions or dict
        excluded_nodes : iterable of str, optional
            Nodes that may not be used as intermediate hops

        Returns:
        --------
        DWPCResult
            ``timed_out`` is set when the deadline stopped enumeration; the
            result then scores every path found before it.
        """
        view = as_view(view)
        if not isinstance(options, DWPCOptions):
            options = DWPCOptions.from_dict(options)
        source, target = options.source, options.target
        self._require_nodes(view, source, target)

        budget = SearchBudget(max_results=options.max_paths, timeout_ms=options.timeout_ms,
                              clock=self._clock)
        with perf_monitor.timed_operation("DWPC path enumeration", verbose=self.verbose):
            found = []
            for nodes in iter_simple_paths(view, source, target, options.max_hops, budget,
                                           directed=options.directed, excluded=excluded_nodes):
                found.append(nodes)
                budget.accept()
                if budget.full:
                    break

        if not found:
            min_hops = None
            if not budget.timed_out:
                min_hops = self.min_hops_needed(view, source, target, options.max_hops + 3,
                                                directed=options.directed,
                                                excluded_nodes=excluded_nodes)
            if self.verbose:
                print(f"No paths within {options.max_hops} hops "
                      f"(minimum needed: {min_hops if min_hops is not None else 'unknown'})")
            return DWPCResult(
                dwpc_score=0.0, path_count=0, paths=[], all_metapaths=[],
                damping=options.damping, timed_out=budget.timed_out,
                min_hops_needed=min_hops, elapsed_ms=budget.elapsed_ms,
            )

        # Paths found before the deadline are always typed and scored
        typed = []
        for nodes in found:
            typed.append((nodes, tuple(self._node_type(view, n) for n in nodes)))

        counts = Counter(metapath for _, metapath in typed)
        all_metapaths = list(dict.fromkeys(metapath for _, metapath in typed))
        primary = counts.most_common(1)[0][0] if counts else None
        primary_types = frozenset(primary or ())

        cache = {}

        def degree_of(node_id):
            if node_id not in cache:
                cache[node_id] = self.metapath_degree(view, node_id, primary_types)
            return cache[node_id]

        with perf_monitor.timed_operation("DWPC scoring", verbose=self.verbose):
            scored = []
            for nodes, types in typed:
                labels = [view.get_node_attribute(n, 'label') or n for n in nodes]
                weight = self.path_weight(nodes, degree_of, options.damping)
                scored.append(ScoredPath(nodes, labels, list(types), weight))

        score = float(sum(p.weight for p in scored))
        result = DWPCResult(
            dwpc_score=score,
            path_count=len(scored),
            paths=scored,
            all_metapaths=all_metapaths,
            damping=options.damping,
            timed_out=budget.timed_out,
            primary_metapath=primary,
            elapsed_ms=budget.elapsed_ms,
            metapath_counts=dict(counts),
        )
        if self.verbose:
            flag = " [TIMEOUT]" if result.timed_out else ""
            print(f"DWPC: {score:.4f} ({len(scored)} paths, damping: {options.damping}){flag}")
        return result
