"""
Modularity-based community detection over the undirected projection of the graph.
"""
import math
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Literal, Optional, Tuple

import numpy as np
import pandas as pd

from .colors import DEFAULT_NODE_COLOR, generate_type_color_map, golden_angle_color
from .core_utilities import perf_monitor
from .errors import ComputationError, GraphCoreError, ValidationError
from .graph_store import COMMUNITY_FIELDS, DEFAULT_NODE_TYPE, as_view, scoped_writer

AlgorithmName = Literal['None', 'Leiden', 'Louvain']
ALGORITHMS = ('None', 'Leiden', 'Louvain')

TOO_MANY_COMMUNITIES = 100

_CAMEL_CASE_KEYS = {
    'minCommunitySize': 'min_community_size',
    'randomState': 'random_state',
    'hideFilteredFromPaths': 'hide_filtered_from_paths',
}


def _parse_bool(value):
    # The interactive client sends flags as 'true'/'false' strings
    if isinstance(value, str):
        if value.lower() in ('true', '1', 'yes'):
            return True
        if value.lower() in ('false', '0', 'no', ''):
            return False
        raise ValidationError(f"Cannot interpret '{value}' as a boolean")
    return bool(value)


@dataclass
class CommunityParameters:
    """Clustering parameters."""
    resolution: float = 1.0
    weighted: bool = False
    min_community_size: int = 5
    random_state: Optional[int] = 42
    hide_filtered_from_paths: bool = False

    def __post_init__(self):
        try:
            self.resolution = float(self.resolution)
            self.min_community_size = int(self.min_community_size)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid community parameters: {exc}") from exc
        self.weighted = _parse_bool(self.weighted)
        self.hide_filtered_from_paths = _parse_bool(self.hide_filtered_from_paths)
        if not math.isfinite(self.resolution) or self.resolution < 0:
            raise ValidationError(f"resolution must be a finite number >= 0, got {self.resolution}")
        if self.min_community_size < 0:
            raise ValidationError("min_community_size must be >= 0")

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        kwargs = {}
        for key, value in (data or {}).items():
            kwargs[_CAMEL_CASE_KEYS.get(key, key)] = value
        try:
            return cls(**kwargs)
        except TypeError as exc:
            raise ValidationError(f"Invalid community parameters: {exc}") from exc


@dataclass
class Community:
    rank: int
    name: str
    members: Tuple[str, ...]
    labels: Tuple[str, ...]
    color: str
    percentage: float
    average_degree: float
    degree_central_node: Optional[str]

    @property
    def size(self):
        return len(self.members)

    def to_message(self):
        return {
            'name': self.name,
            'nodes': list(self.labels),
            'color': self.color,
            'percentage': self.percentage,
            'averageDegree': self.average_degree,
            'degreeCentralNode': self.degree_central_node,
        }


@dataclass
class CommunityResult:
    """
    Outcome of one clustering run. Each run replaces the previous one entirely.

    ``communities`` holds only the communities that survived the size filter;
    members of dissolved communities are listed in ``filtered_nodes``.
    """
    algorithm: str
    modularity: float
    resolution: float
    communities: List[Community]
    assignments: Dict[str, int]
    filtered_nodes: Tuple[str, ...]
    parameters: CommunityParameters
    total_communities: int = 0
    too_many_communities: bool = False
    node_count: int = 0
    colors: Dict[str, str] = field(default_factory=dict)

    def community_of(self, node_id):
        rank = self.assignments.get(node_id)
        if rank is None:
            return None
        for community in self.communities:
            if community.rank == rank:
                return community
        return None

    def path_exclusions(self):
        """Nodes path searches must avoid under the current parameters."""
        if self.parameters.hide_filtered_from_paths:
            return frozenset(self.filtered_nodes)
        return frozenset()

    def to_message(self):
        return {
            'modularity': self.modularity,
            'resolution': self.resolution,
            'communities': [c.to_message() for c in self.communities],
        }

    def to_frame(self):
        rows = [{
            'name': c.name,
            'size': c.size,
            'color': c.color,
            'percentage': c.percentage,
            'average_degree': c.average_degree,
            'degree_central_node': c.degree_central_node,
        } for c in self.communities]
        return pd.DataFrame(rows, columns=['name', 'size', 'color', 'percentage',
                                           'average_degree', 'degree_central_node'])


def modularity(adjacency, labels, resolution=1.0):
    """
    Newman modularity of a partition of a symmetric adjacency matrix.

    Returns 0.0 for graphs without edge weight so the value is always finite.
    """
    labels = np.asarray(labels, dtype=np.int64)
    total = float(adjacency.sum())
    if total <= 0.0 or labels.size == 0:
        return 0.0
    degrees = np.asarray(adjacency.sum(axis=1)).ravel()
    coo = adjacency.tocoo()
    inner = coo.data[labels[coo.row] == labels[coo.col]].sum() / total
    community_degrees = np.bincount(labels, weights=degrees)
    expected = ((community_degrees / total) ** 2).sum()
    return float(inner - resolution * expected)


class CommunityDetector:
    """
    Louvain-family clustering with colour and label assignment.

    Parameters:
    -----------
    verbose : bool, default=False
        Print progress and warnings
    """

    def __init__(self, verbose=False):
        self.verbose = verbose
        self.last_result = None

    def _cluster(self, adjacency, algorithm, params):
        n = adjacency.shape[0]
        if adjacency.nnz == 0:
            # Optimisers are pointless without edges: every node stands alone
            return np.arange(n, dtype=np.int64)
        if adjacency.data.min() < 0:
            raise ComputationError("Edge weights must be non-negative for modularity clustering")

        try:
            from sknetwork.clustering import Leiden, Louvain
        except ImportError as exc:
            raise ComputationError(
                "To use Leiden/Louvain clustering, install scikit-network: pip install scikit-network"
            ) from exc

        estimator = Leiden if algorithm == 'Leiden' else Louvain
        try:
            model = estimator(
                resolution=params.resolution,
                modularity='newman',
                random_state=params.random_state,
                return_probs=False,
            )
            model.fit(adjacency)
            labels = np.asarray(model.labels_, dtype=np.int64).ravel()
        except Exception as exc:
            raise ComputationError(f"{algorithm} clustering failed: {exc}") from exc

        if labels.ndim != 1 or labels.shape[0] != n:
            raise ComputationError(
                f"{algorithm} labels have wrong shape {labels.shape}, expected ({n},)"
            )
        return labels

    def detect(self, view, algorithm='Leiden', parameters=None):
        """
        Partition the graph without touching it.

        Parameters:
        -----------
        view : GraphStore or ReadView
        algorithm : {'Leiden', 'Louvain'}
        parameters : CommunityParameters or dict, optional

        Returns:
        --------
        CommunityResult
        """
        if algorithm not in ALGORITHMS or algorithm == 'None':
            raise ValidationError(f"Unknown clustering algorithm '{algorithm}'")
        params = parameters if isinstance(parameters, CommunityParameters) \
            else CommunityParameters.from_dict(parameters)
        view = as_view(view)

        with perf_monitor.timed_operation(f"{algorithm} clustering (res={params.resolution})",
                                          verbose=self.verbose):
            try:
                adjacency, index = view.adjacency(weighted=params.weighted)
                labels = self._cluster(adjacency, algorithm, params)
                score = modularity(adjacency, labels, params.resolution)
            except GraphCoreError:
                raise
            except Exception as exc:
                raise ComputationError(f"{algorithm} clustering failed: {exc}") from exc

        # Ranks follow the first appearance of each cluster in node order
        ranks = {}
        for label in labels:
            ranks.setdefault(int(label), len(ranks))
        grouped = [[] for _ in range(len(ranks))]
        for node_id, label in zip(index, labels):
            grouped[ranks[int(label)]].append(node_id)

        degrees = view.degrees()
        order = len(index)
        communities = []
        assignments = {}
        filtered = []
        colors = {}
        for rank, members in enumerate(grouped):
            color = golden_angle_color(rank)
            if len(members) < params.min_community_size:
                filtered.extend(members)
                continue
            member_degrees = [degrees.get(m, 0) for m in members]
            central = members[int(np.argmax(member_degrees))]
            communities.append(Community(
                rank=rank,
                name=f"Community {rank}",
                members=tuple(members),
                labels=tuple(view.get_node_attribute(m, 'label') or m for m in members),
                color=color,
                percentage=round(len(members) / order * 100.0, 2),
                average_degree=round(sum(member_degrees) / len(members), 2),
                degree_central_node=view.get_node_attribute(central, 'label') or central,
            ))
            for m in members:
                assignments[m] = rank
                colors[m] = color

        result = CommunityResult(
            algorithm=algorithm,
            modularity=score,
            resolution=params.resolution,
            communities=communities,
            assignments=assignments,
            filtered_nodes=tuple(filtered),
            parameters=params,
            total_communities=len(grouped),
            too_many_communities=len(communities) > TOO_MANY_COMMUNITIES,
            node_count=order,
            colors=colors,
        )
        if self.verbose:
            print(f"Found {len(grouped)} communities, {len(communities)} with at least "
                  f"{params.min_community_size} members (modularity: {score:.3f})")
            if result.too_many_communities:
                print(f"WARNING: {len(communities)} communities detected; "
                      f"consider lowering the resolution")
        return result

    def apply(self, target, result):
        """
        Write the result's colours and community names onto the graph.
        Members of dissolved communities lose both their colour and label.
        """
        writer = scoped_writer(target, node_fields=COMMUNITY_FIELDS)
        names = {c.rank: c.name for c in result.communities}
        dissolved = set(result.filtered_nodes)

        def assign(node_id, attrs):
            rank = result.assignments.get(node_id)
            if rank is not None:
                attrs['color'] = result.colors[node_id]
                attrs['community'] = names[rank]
            elif node_id in dissolved:
                attrs['color'] = None
                attrs['community'] = None
            return attrs

        changed = writer.update_each_node_attributes(assign)
        self.last_result = result
        return changed

    def clear(self, target):
        """Reset every node to its type colour and drop all community labels."""
        writer = scoped_writer(target, node_fields=COMMUNITY_FIELDS)
        type_colors = generate_type_color_map(writer)

        def reset(node_id, attrs):
            node_type = attrs.get('node_type') or DEFAULT_NODE_TYPE
            attrs['color'] = type_colors.get(node_type, DEFAULT_NODE_COLOR)
            attrs['community'] = None
            return attrs

        changed = writer.update_each_node_attributes(reset)
        self.last_result = None
        if self.verbose:
            print(f"Cleared community colouring on {changed} nodes")
        return changed

    def run(self, target, algorithm='Leiden', parameters=None):
        """
        Detect and apply in one call; ``'None'`` clears instead and returns None.
        The graph is only written after detection has fully succeeded.
        """
        if algorithm == 'None':
            self.clear(target)
            return None
        result = self.detect(target, algorithm, parameters)
        self.apply(target, result)
        return result
