import json

import pytest
from click.testing import CliRunner

from kg_analytics.cli import load_node_link, main
from kg_analytics.property_registry import default_registry


@pytest.fixture
def graph_file(tmp_path):
    data = {
        'nodes': [
            {'id': 'g1', 'label': 'TP53', 'nodeType': 'Gene',
             'properties': {'DEG': {'log2FoldChange': 2.0, 'padj': 0.001}, 'TE': {'tpm': 4.0}}},
            {'id': 'g2', 'nodeType': 'Gene',
             'properties': {'DEG': {'log2FoldChange': -1.0, 'padj': 0.2}, 'TE': {'tpm': 8.0}}},
            {'id': 'p1', 'nodeType': 'Pathways'},
            {'id': 'd1', 'nodeType': 'Disease', 'properties': {'prevalence': 0.1}},
        ],
        'edges': [
            {'source': 'g1', 'target': 'p1', 'score': 0.9},
            {'source': 'p1', 'target': 'd1', 'score': 0.4},
            {'source': 'g2', 'target': 'p1', 'score': 0.7},
            {'id': 'direct', 'source': 'g2', 'target': 'd1'},
        ],
    }
    path = tmp_path / 'graph.json'
    path.write_text(json.dumps(data))
    return str(path)


def test_load_node_link(graph_file):
    registry = default_registry()
    store = load_node_link(graph_file, registry=registry)
    assert store.order == 4
    assert store.size == 4
    assert store.get_node_attribute('g1', 'node_type') == 'Gene'
    assert store.get_node_attribute('g1', 'label') == 'TP53'
    assert store.has_edge('e0') and store.has_edge('direct')
    assert store.property_values('tpm', 'TE') == {'g1': 4.0, 'g2': 8.0}
    assert store.property_values('prevalence') == {'d1': 0.1}
    assert registry.resolve('padj', 'DEG').kind == 'p_value'
    assert registry.resolve('log2FoldChange', 'DEG').kind == 'differential'


def test_stats(graph_file):
    result = CliRunner().invoke(main, ['--quiet', 'stats', graph_file, '--hub-edges', '1'])
    assert result.exit_code == 0, result.output
    assert 'Nodes: 4  Edges: 4' in result.output
    assert 'Top 4 by pagerank' in result.output
    assert 'Hub nodes:' in result.output


def test_paths(graph_file):
    result = CliRunner().invoke(main, ['--quiet', 'paths', graph_file, 'g1', 'd1', '--max-depth', '3'])
    assert result.exit_code == 0, result.output
    assert '2 paths' in result.output
    assert 'TP53 -> p1 -> d1' in result.output


def test_paths_with_metapath(graph_file):
    result = CliRunner().invoke(main, ['--quiet', 'paths', graph_file, 'g1', 'd1',
                                       '--metapath', 'Gene,Pathways,Disease'])
    assert result.exit_code == 0, result.output
    assert '1 paths' in result.output


def test_dwpc(graph_file):
    result = CliRunner().invoke(main, ['--quiet', 'dwpc', graph_file, 'g1', 'd1', '--max-hops', '2'])
    assert result.exit_code == 0, result.output
    assert 'DWPC: 0.6444 (1 paths' in result.output
    assert 'Primary metapath: Gene -> Pathways -> Disease' in result.output


def test_dwpc_invalid_hops(graph_file):
    result = CliRunner().invoke(main, ['--quiet', 'dwpc', graph_file, 'g1', 'd1', '--max-hops', '1'])
    assert result.exit_code != 0
    assert 'Maximum hops must be at least 2' in result.output


def test_unknown_node(graph_file):
    result = CliRunner().invoke(main, ['--quiet', 'paths', graph_file, 'g1', 'nope'])
    assert result.exit_code != 0
    assert "Target node 'nope' not found" in result.output


def test_communities(graph_file):
    result = CliRunner().invoke(main, ['--quiet', 'communities', graph_file, '--min-community-size', '1'])
    assert result.exit_code == 0, result.output
    assert 'communities (modularity:' in result.output


def test_encode_p_values(graph_file):
    result = CliRunner().invoke(main, ['--quiet', 'encode', graph_file, 'padj', '--namespace', 'DEG'])
    assert result.exit_code == 0, result.output
    assert 'size by padj (p_value): 2 encoded' in result.output


def test_layout_writes_positions(graph_file, tmp_path):
    output = tmp_path / 'positions.json'
    result = CliRunner().invoke(main, ['--quiet', '--timing', 'layout', graph_file, '--seed', '1',
                                       '--ticks', '500', '--output', str(output)])
    assert result.exit_code == 0, result.output
    assert 'converged=True' in result.output
    assert 'TIMING SUMMARY' in result.output
    positions = json.loads(output.read_text())
    assert set(positions) == {'g1', 'g2', 'p1', 'd1'}
