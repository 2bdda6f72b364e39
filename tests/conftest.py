import itertools

import pytest

from kg_analytics.graph_store import GraphStore


def build_store(nodes, edges):
    """
    nodes: iterable of id or (id, node_type)
    edges: iterable of (source, target) or (source, target, score)
    """
    store = GraphStore()
    for entry in nodes:
        if isinstance(entry, tuple):
            store.add_node(entry[0], node_type=entry[1])
        else:
            store.add_node(entry)
    for i, edge in enumerate(edges):
        attrs = {'score': edge[2]} if len(edge) > 2 else {}
        store.add_edge(f"e{i}", edge[0], edge[1], **attrs)
    return store


@pytest.fixture
def make_store():
    return build_store


@pytest.fixture
def chain():
    """a - b - c - d"""
    return build_store(['a', 'b', 'c', 'd'], [('a', 'b'), ('b', 'c'), ('c', 'd')])


@pytest.fixture
def two_cliques():
    """Two 5-cliques of Genes joined by a single bridge edge."""
    left = [f"l{i}" for i in range(5)]
    right = [f"r{i}" for i in range(5)]
    edges = list(itertools.combinations(left, 2)) + list(itertools.combinations(right, 2))
    edges.append(('l0', 'r0'))
    return build_store([(n, 'Gene') for n in left + right], edges)


@pytest.fixture
def gene_graph():
    """
    Gene -- Pathways -- Disease with one extra gene and a direct gene-disease edge.

        g1 - p1 - d1
        g2 - p1
        g2 - d1
    """
    store = build_store(
        [('g1', 'Gene'), ('g2', 'Gene'), ('p1', 'Pathways'), ('d1', 'Disease')],
        [('g1', 'p1', 0.9), ('p1', 'd1', 0.4), ('g2', 'p1', 0.7), ('g2', 'd1')],
    )
    store.set_node_attribute('g1', 'label', 'TP53')
    return store
