"""
NetworkStatistics - Summary metrics and centrality rankings for a knowledge graph.
"""
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd
from scipy.sparse import diags
from scipy.sparse.csgraph import shortest_path

from .core_utilities import TimingStats
from .errors import ComputationError
from .graph_store import as_view

TOP_N = 10


@dataclass
class NetworkStatistics:
    total_nodes: int
    total_edges: int
    avg_degree: float
    density: float
    diameter: Optional[int]
    degree_distribution: List[dict] = field(default_factory=list)
    top10_by_degree: List[dict] = field(default_factory=list)
    top10_by_betweenness: List[dict] = field(default_factory=list)
    top10_by_closeness: List[dict] = field(default_factory=list)
    top10_by_eigenvector: List[dict] = field(default_factory=list)
    top10_by_pagerank: List[dict] = field(default_factory=list)
    edge_score_distribution: Optional[List[dict]] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)

    def top_frame(self, metric):
        """Ranking for ``metric`` ('degree', 'betweenness', ...) as a DataFrame."""
        rows = getattr(self, f"top10_by_{metric}")
        return pd.DataFrame(rows, columns=['id', 'label', 'node_type', metric])


class NetworkAnalyzer:
    """
    Computes network statistics on the undirected projection of a graph view.

    Parameters:
    -----------
    verbose : bool, default=False
        Whether to print progress messages
    max_path_nodes : int, default=5000
        All-pairs metrics (betweenness, closeness, diameter) are skipped on
        larger graphs
    """

    def __init__(self, verbose=False, max_path_nodes=5000):
        self.verbose = verbose
        self.max_path_nodes = max_path_nodes
        self.timing = TimingStats()

    # ------------------------------------------------------------------
    # Centralities
    # ------------------------------------------------------------------
    @staticmethod
    def betweenness(adjacency):
        """Brandes betweenness on an unweighted undirected graph (each pair counted once)."""
        n = adjacency.shape[0]
        indptr, indices = adjacency.indptr, adjacency.indices
        scores = np.zeros(n)
        for s in range(n):
            stack = []
            preds = [[] for _ in range(n)]
            sigma = np.zeros(n)
            sigma[s] = 1.0
            dist = np.full(n, -1, dtype=np.int64)
            dist[s] = 0
            queue = deque([s])
            while queue:
                v = queue.popleft()
                stack.append(v)
                for w in indices[indptr[v]:indptr[v + 1]]:
                    if dist[w] < 0:
                        dist[w] = dist[v] + 1
                        queue.append(w)
                    if dist[w] == dist[v] + 1:
                        sigma[w] += sigma[v]
                        preds[w].append(v)
            delta = np.zeros(n)
            while stack:
                w = stack.pop()
                for v in preds[w]:
                    delta[v] += sigma[v] / sigma[w] * (1.0 + delta[w])
                if w != s:
                    scores[w] += delta[w]
        return scores / 2.0

    @staticmethod
    def closeness(distances):
        """(reachable - 1) / sum of distances to reachable nodes; 0 for isolated nodes."""
        finite = np.isfinite(distances)
        reachable = finite.sum(axis=1) - 1
        totals = np.where(finite, distances, 0.0).sum(axis=1)
        return np.divide(reachable, totals, out=np.zeros(len(totals)), where=totals > 0)

    @staticmethod
    def eigenvector(adjacency, tolerance=1e-3, max_iterations=100):
        n = adjacency.shape[0]
        x = np.full(n, 1.0 / n)
        for _ in range(max_iterations):
            previous = x
            x = adjacency @ x + x  # shifted to avoid oscillation on bipartite graphs
            norm = np.linalg.norm(x)
            if norm == 0:
                return x
            x = x / norm
            if np.abs(x - previous).sum() < n * tolerance:
                return x
        raise ComputationError(f"Eigenvector centrality did not converge in {max_iterations} iterations")

    @staticmethod
    def pagerank(adjacency, damping=0.85, tolerance=1e-6, max_iterations=100):
        """PageRank on a weighted directed adjacency (row = source)."""
        n = adjacency.shape[0]
        out_weight = np.asarray(adjacency.sum(axis=1)).ravel()
        inverse = np.divide(1.0, out_weight, out=np.zeros(n), where=out_weight > 0)
        transition = diags(inverse) @ adjacency
        dangling = out_weight == 0
        x = np.full(n, 1.0 / n)
        for _ in range(max_iterations):
            previous = x
            x = damping * (transition.T @ x + x[dangling].sum() / n) + (1.0 - damping) / n
            if np.abs(x - previous).sum() < n * tolerance:
                return x
        raise ComputationError(f"PageRank did not converge in {max_iterations} iterations")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def _ranking(self, view, index, scores, metric):
        order = np.argsort(-scores, kind='stable')[:TOP_N]
        return [{
            'id': index[i],
            'label': view.get_node_attribute(index[i], 'label') or index[i],
            'node_type': view.get_node_attribute(index[i], 'node_type') or '',
            metric: round(float(scores[i]), 3),
        } for i in order]

    def compute(self, view):
        """
        Compute the network statistics.

        Parameters:
        -----------
        view : GraphStore or ReadView

        Returns:
        --------
        NetworkStatistics
            Centrality rankings that cannot be computed are left empty and
            the reason is recorded in ``warnings``.
        """
        view = as_view(view)
        self.timing.start("compute_network_statistics")
        n, m = view.order, view.size
        degrees = view.degrees()
        stats = NetworkStatistics(
            total_nodes=n,
            total_edges=m,
            avg_degree=(2.0 * m / n) if n else 0.0,
            density=(m / (n * (n - 1))) if n > 1 else 0.0,
            diameter=None,
        )

        distribution = Counter(degrees.values())
        stats.degree_distribution = [{'degree': d, 'count': c} for d, c in sorted(distribution.items())]
        by_degree = sorted(degrees.items(), key=lambda item: -item[1])[:TOP_N]
        stats.top10_by_degree = [{
            'id': node_id,
            'label': view.get_node_attribute(node_id, 'label') or node_id,
            'node_type': view.get_node_attribute(node_id, 'node_type') or '',
            'degree': degree,
        } for node_id, degree in by_degree]

        if n == 0:
            self.timing.end("compute_network_statistics")
            return stats

        adjacency, index = view.adjacency()

        if n <= self.max_path_nodes:
            with self.timing.timed("all_pairs"):
                distances = shortest_path(adjacency, directed=False, unweighted=True)
                finite = distances[np.isfinite(distances)]
                stats.diameter = int(finite.max()) if finite.size else 0
                stats.top10_by_closeness = self._ranking(view, index, self.closeness(distances), 'closeness')
                stats.top10_by_betweenness = self._ranking(view, index, self.betweenness(adjacency), 'betweenness')
        else:
            stats.warnings.append(
                f"Skipped betweenness, closeness and diameter for {n} nodes (limit {self.max_path_nodes})"
            )

        try:
            scores = self.eigenvector(adjacency)
            stats.top10_by_eigenvector = self._ranking(view, index, scores, 'eigenvector')
        except ComputationError as exc:
            stats.warnings.append(str(exc))

        try:
            weighted, _ = view.adjacency(weighted=True, directed=True)
            scores = self.pagerank(weighted)
            stats.top10_by_pagerank = self._ranking(view, index, scores, 'pagerank')
        except ComputationError as exc:
            stats.warnings.append(str(exc))

        scores = [view.get_edge_attribute(e, 'score') for e in view.edges()]
        scores = [float(s) for s in scores if s is not None]
        if scores:
            counts = Counter(scores)
            cumulative, running = [], 0
            for score in sorted(counts, reverse=True):
                running += counts[score]
                cumulative.append({'score': score, 'count': running})
            stats.edge_score_distribution = cumulative[::-1]

        elapsed = self.timing.end("compute_network_statistics")
        if self.verbose:
            for warning in stats.warnings:
                print(f"WARNING: {warning}")
            print(f"Network statistics for {n} nodes, {m} edges computed in {elapsed:.3f}s")
        return stats


def compute_network_statistics(view, verbose=False):
    return NetworkAnalyzer(verbose=verbose).compute(view)
