"""
Command line interface: run the analytics core headless on a node-link JSON graph.
"""
import json

import click

from .community import CommunityDetector, CommunityParameters
from .core_utilities import perf_monitor
from .errors import GraphCoreError
from .filters import apply_degree_cutoff, apply_edge_score_cutoff, mark_hub_nodes
from .force_layout import ForceSimulation, LayoutSettings
from .graph_store import GraphStore
from .paths import DWPCOptions, PathEngine
from .property_registry import default_registry
from .statistics import NetworkAnalyzer
from .visual_encoder import VisualEncoder

_NODE_KEYS = {'nodeType': 'node_type', 'type': 'node_type'}


def load_node_link(path, registry=None):
    """
    Read ``{"nodes": [...], "edges": [...]}`` into a new GraphStore.

    Node entries need an ``id``; ``properties`` may be flat or grouped by
    namespace. Edges without an ``id`` are numbered in file order. When a
    registry is given, namespaced property columns are declared in it.
    """
    with open(path) as handle:
        data = json.load(handle)

    store = GraphStore()
    columns = {}
    for entry in data.get('nodes', []):
        entry = dict(entry)
        node_id = str(entry.pop('id'))
        properties = entry.pop('properties', None) or {}
        attrs = {_NODE_KEYS.get(k, k): v for k, v in entry.items()}
        store.add_node(node_id, **attrs)
        flat = {k: v for k, v in properties.items() if not isinstance(v, dict)}
        if flat:
            store.set_node_properties(node_id, flat)
        for namespace, values in properties.items():
            if isinstance(values, dict):
                store.set_node_properties(node_id, values, namespace=namespace)
                columns.setdefault(namespace, {}).update(dict.fromkeys(values))

    for i, entry in enumerate(data.get('edges', data.get('links', []))):
        entry = dict(entry)
        edge_id = str(entry.pop('id', f"e{i}"))
        source = str(entry.pop('source'))
        target = str(entry.pop('target'))
        store.add_edge(edge_id, source, target, **entry)

    if registry is not None:
        for namespace, names in columns.items():
            registry.declare_columns(namespace, list(names))
    return store


def _load(ctx, path):
    with perf_monitor.timed_operation("Graph loading", verbose=ctx.obj['verbose']):
        store = load_node_link(path, registry=ctx.obj['registry'])
    if ctx.obj['verbose']:
        click.echo(f"Loaded {store}")
    return store


@click.group()
@click.option('--verbose/--quiet', default=True, help="Print progress messages (default: verbose)")
@click.option('--timing/--no-timing', default=False, help="Print a timing summary at the end")
@click.pass_context
def main(ctx, verbose, timing):
    """Knowledge graph analytics: layout, communities, paths, DWPC, encoding and statistics."""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['registry'] = default_registry()
    perf_monitor.enabled = timing
    perf_monitor.reset()
    if timing:
        ctx.call_on_close(perf_monitor.print_timing_summary)


@main.command()
@click.argument('graph_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--ticks', type=int, default=300, show_default=True, help="Maximum number of ticks")
@click.option('--link-distance', type=float, default=30.0, show_default=True)
@click.option('--charge-strength', type=float, default=-200.0, show_default=True)
@click.option('--collide-radius', type=float, default=40.0, show_default=True)
@click.option('--seed', type=int, default=None, help="Seed for initial placement")
@click.option('--output', type=click.Path(dir_okay=False), default=None,
              help="Write {id: [x, y]} positions to this JSON file")
@click.pass_context
def layout(ctx, graph_file, ticks, link_distance, charge_strength, collide_radius, seed, output):
    """Run the force-directed layout to convergence."""
    try:
        store = _load(ctx, graph_file)
        settings = LayoutSettings(link_distance=link_distance, charge_strength=charge_strength,
                                  collide_radius=collide_radius, seed=seed)
        simulation = ForceSimulation.from_view(store.read_view(), settings=settings,
                                               verbose=ctx.obj['verbose'])
        simulation.run(max_ticks=ticks)
        positions = simulation.position_map()
        store.writer(node_fields=('x', 'y')).set_many_node_attributes(
            {node_id: {'x': x, 'y': y} for node_id, (x, y) in positions.items()}
        )
    except GraphCoreError as exc:
        raise click.ClickException(str(exc))

    click.echo(f"Layout: {simulation.tick_count} ticks, alpha={simulation.alpha:.4f}, "
               f"converged={simulation.converged}")
    if output:
        with open(output, 'w') as handle:
            json.dump({k: [x, y] for k, (x, y) in positions.items()}, handle, indent=2)
        click.echo(f"Positions written to {output}")


@main.command()
@click.argument('graph_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--algorithm', type=click.Choice(['Leiden', 'Louvain']), default='Leiden', show_default=True)
@click.option('--resolution', type=float, default=1.0, show_default=True)
@click.option('--weighted/--unweighted', default=False, help="Use edge scores as weights")
@click.option('--min-community-size', type=int, default=5, show_default=True)
@click.pass_context
def communities(ctx, graph_file, algorithm, resolution, weighted, min_community_size):
    """Detect communities and print their summary table."""
    try:
        store = _load(ctx, graph_file)
        params = CommunityParameters(resolution=resolution, weighted=weighted,
                                     min_community_size=min_community_size)
        result = CommunityDetector(verbose=ctx.obj['verbose']).run(store, algorithm, params)
    except GraphCoreError as exc:
        raise click.ClickException(str(exc))

    click.echo(f"{len(result.communities)} communities (modularity: {result.modularity:.3f}); "
               f"{len(result.filtered_nodes)} nodes in communities smaller than {min_community_size}")
    if result.communities:
        click.echo(result.to_frame().to_string(index=False))


@main.command()
@click.argument('graph_file', type=click.Path(exists=True, dir_okay=False))
@click.argument('source')
@click.argument('target')
@click.option('--max-depth', type=int, default=5, show_default=True)
@click.option('--max-paths', type=int, default=1000, show_default=True)
@click.option('--metapath', type=str, default=None,
              help="Comma separated node types, e.g. Gene,Pathways,Disease")
@click.option('--directed/--undirected', default=False, help="Follow edge direction")
@click.option('--timeout-ms', type=float, default=30000, show_default=True)
@click.pass_context
def paths(ctx, graph_file, source, target, max_depth, max_paths, metapath, directed, timeout_ms):
    """List simple paths between two nodes."""
    engine = PathEngine(verbose=ctx.obj['verbose'])
    try:
        store = _load(ctx, graph_file)
        if metapath:
            types = [t.strip() for t in metapath.split(',')]
            results = engine.find_paths_with_metapath(store, source, target, types, max_paths=max_paths,
                                                       timeout_ms=timeout_ms)
        else:
            results = engine.find_all_paths(store, source, target, max_depth=max_depth,
                                            max_paths=max_paths, directed=directed, timeout_ms=timeout_ms)
    except GraphCoreError as exc:
        raise click.ClickException(str(exc))

    click.echo(f"{len(results)} paths" + (" [TIMEOUT]" if results.timed_out else ""))
    for result in results:
        click.echo(f"  [{result.length}] " + " -> ".join(result.labels))


@main.command()
@click.argument('graph_file', type=click.Path(exists=True, dir_okay=False))
@click.argument('source')
@click.argument('target')
@click.option('--max-hops', type=int, default=3, show_default=True)
@click.option('--damping', type=float, default=0.4, show_default=True)
@click.option('--max-paths', type=int, default=10000, show_default=True)
@click.option('--timeout-ms', type=float, default=30000, show_default=True)
@click.pass_context
def dwpc(ctx, graph_file, source, target, max_hops, damping, max_paths, timeout_ms):
    """Degree-weighted path count between two nodes."""
    try:
        store = _load(ctx, graph_file)
        options = DWPCOptions(source=source, target=target, max_hops=max_hops, damping=damping,
                              max_paths=max_paths, timeout_ms=timeout_ms)
        result = PathEngine(verbose=ctx.obj['verbose']).compute_dwpc(store, options)
    except GraphCoreError as exc:
        raise click.ClickException(str(exc))

    flag = " [TIMEOUT]" if result.timed_out else ""
    click.echo(f"DWPC: {result.dwpc_score:.4f} ({result.path_count} paths, damping: {damping}){flag}")
    if result.min_hops_needed is not None:
        click.echo(f"No path within {max_hops} hops; minimum hops needed: {result.min_hops_needed}")
    if result.primary_metapath:
        click.echo("Primary metapath: " + " -> ".join(result.primary_metapath))


@main.command()
@click.argument('graph_file', type=click.Path(exists=True, dir_okay=False))
@click.argument('properties', nargs=-1, required=True)
@click.option('--channel', type=click.Choice(['size', 'color']), default='size', show_default=True)
@click.option('--namespace', type=str, default=None, help="Property namespace, e.g. DEG or TE")
@click.pass_context
def encode(ctx, graph_file, properties, channel, namespace):
    """Encode node size or colour from one or more data properties."""
    try:
        store = _load(ctx, graph_file)
        encoder = VisualEncoder(registry=ctx.obj['registry'], verbose=ctx.obj['verbose'])
        selected = properties[0] if len(properties) == 1 else properties
        if channel == 'size':
            result = encoder.encode_size(store, selected, namespace=namespace)
        else:
            result = encoder.encode_color(store, selected, namespace=namespace)
    except GraphCoreError as exc:
        raise click.ClickException(str(exc))

    click.echo(f"{channel} by {', '.join(result.properties)} ({result.kind}): "
               f"{result.encoded} encoded, {result.missing} without data, domain {result.domain}")


@main.command()
@click.argument('graph_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--edge-cutoff', type=float, default=None, help="Hide edges scoring below this value")
@click.option('--degree-cutoff', type=int, default=None, help="Hide nodes with degree below twice this value")
@click.option('--hub-edges', type=int, default=0, help="Mark nodes with degree >= twice this value as hubs")
@click.pass_context
def stats(ctx, graph_file, edge_cutoff, degree_cutoff, hub_edges):
    """Print network statistics, optionally after applying visibility filters."""
    try:
        store = _load(ctx, graph_file)
        if edge_cutoff is not None:
            click.echo(f"Visible edges after score cutoff: {apply_edge_score_cutoff(store, edge_cutoff)}")
        if degree_cutoff is not None:
            nodes, edges = apply_degree_cutoff(store, degree_cutoff)
            click.echo(f"Visible after degree cutoff: {nodes} nodes, {edges} edges")
        hubs = mark_hub_nodes(store, hub_edges)
        if hubs:
            click.echo(f"Hub nodes: {', '.join(hubs)}")
        result = NetworkAnalyzer(verbose=ctx.obj['verbose']).compute(store)
    except GraphCoreError as exc:
        raise click.ClickException(str(exc))

    click.echo(f"Nodes: {result.total_nodes:,}  Edges: {result.total_edges:,}")
    click.echo(f"Average degree: {result.avg_degree:.3f}  Density: {result.density:.4f}  "
               f"Diameter: {result.diameter}")
    for metric in ('degree', 'betweenness', 'closeness', 'eigenvector', 'pagerank'):
        frame = result.top_frame(metric)
        if not frame.empty:
            click.echo(f"\nTop {len(frame)} by {metric}:")
            click.echo(frame.to_string(index=False))


if __name__ == '__main__':
    main()
