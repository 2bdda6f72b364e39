"""
Visibility filters and hub marking.

Filters only toggle the ``hidden`` flag; nothing is removed from the graph.
"""
from .graph_store import VISIBILITY_FIELDS, scoped_writer
from .visual_encoder import as_number


def _visibility_writer(target):
    return scoped_writer(target, node_fields=VISIBILITY_FIELDS, edge_fields=('hidden',))


def visible_edge_count(view):
    """Edges that are not hidden and whose endpoints are both visible."""
    count = 0
    for edge_id, source, target in view.edge_list():
        if view.get_edge_attribute(edge_id, 'hidden'):
            continue
        if view.get_node_attribute(source, 'hidden') or view.get_node_attribute(target, 'hidden'):
            continue
        count += 1
    return count


def visible_node_count(view):
    return sum(1 for node_id in view.nodes() if not view.get_node_attribute(node_id, 'hidden'))


def apply_edge_score_cutoff(target, cutoff):
    """
    Hide edges whose score is below ``cutoff``; edges without a score stay visible.

    Returns:
    --------
    int
        Number of visible edges afterwards
    """
    writer = _visibility_writer(target)

    def toggle(edge_id, attrs):
        score = as_number(attrs.get('score'))
        attrs['hidden'] = score is not None and score < cutoff
        return attrs

    writer.update_each_edge_attributes(toggle)
    return visible_edge_count(writer)


def apply_degree_cutoff(target, cutoff):
    """
    Hide nodes whose degree is below ``2 * cutoff``.

    Returns:
    --------
    tuple of int
        (visible nodes, visible edges)
    """
    writer = _visibility_writer(target)
    degrees = writer.degrees()
    threshold = 2 * cutoff

    def toggle(node_id, attrs):
        attrs['hidden'] = degrees.get(node_id, 0) < threshold
        return attrs

    writer.update_each_node_attributes(toggle)
    return visible_node_count(writer), visible_edge_count(writer)


def apply_property_cutoff(target, property_name, cutoff, namespace=None):
    """
    Hide nodes whose property value is below ``cutoff``; nodes without a
    numeric value are hidden as well.
    """
    writer = _visibility_writer(target)
    values = {k: as_number(v) for k, v in writer.property_values(property_name, namespace).items()}

    def toggle(node_id, attrs):
        value = values.get(node_id)
        attrs['hidden'] = value is None or value < cutoff
        return attrs

    writer.update_each_node_attributes(toggle)
    return visible_node_count(writer), visible_edge_count(writer)


def mark_hub_nodes(target, min_edges):
    """
    Render nodes with degree >= ``2 * min_edges`` with a border, others as
    plain circles. A ``min_edges`` below 1 leaves the graph unchanged.

    Returns:
    --------
    list of str
        Ids of the hub nodes
    """
    if min_edges < 1:
        return []
    writer = _visibility_writer(target)
    degrees = writer.degrees()
    hubs = [node_id for node_id, degree in degrees.items() if degree >= 2 * min_edges]
    hub_set = set(hubs)

    def mark(node_id, attrs):
        attrs['type'] = 'border' if node_id in hub_set else 'circle'
        return attrs

    writer.update_each_node_attributes(mark)
    return hubs
