"""
Tests for the analysis bus and the generation-checked coordinator.
"""
import threading

import pytest

from kg_analytics.analysis_bus import AnalysisBus, AnalysisCoordinator
from kg_analytics.colors import PREDEFINED_TYPE_COLORS
from kg_analytics.community import CommunityDetector, CommunityParameters
from kg_analytics.errors import ValidationError
from kg_analytics.messages import (AlgorithmRequest, AlgorithmResults, AnalysisCleared, AnalysisFailed,
                                   DWPCRequest, DWPCResults, EncodeRequest, EncodingResults, PathRequest,
                                   PathResults)
from kg_analytics.paths import DWPCOptions, PathEngine


class BlockingDetector(CommunityDetector):
    """Detector whose first detect call waits until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0
        self._lock = threading.Lock()

    def detect(self, view, algorithm='Leiden', parameters=None):
        with self._lock:
            self.calls += 1
            first = self.calls == 1
        if first:
            self.entered.set()
            self.release.wait(10)
        return super().detect(view, algorithm, parameters)


def collect(bus, *message_types):
    received = []
    for message_type in message_types:
        bus.subscribe(message_type, received.append)
    return received


class TestAnalysisBus:

    def test_publish_reaches_subscribers_in_order(self):
        bus = AnalysisBus()
        seen = []
        bus.subscribe(AnalysisCleared, lambda m: seen.append(('first', m.generation)))
        bus.subscribe(AnalysisCleared, lambda m: seen.append(('second', m.generation)))
        assert bus.publish(AnalysisCleared(1, 'communities')) == 2
        assert seen == [('first', 1), ('second', 1)]

    def test_unsubscribe(self):
        bus = AnalysisBus()
        seen = []
        unsubscribe = bus.subscribe(AnalysisCleared, seen.append)
        unsubscribe()
        assert bus.publish(AnalysisCleared(1, 'communities')) == 0
        assert seen == []

    def test_unknown_message_type(self):
        bus = AnalysisBus()
        with pytest.raises(ValidationError):
            bus.subscribe(dict, print)
        with pytest.raises(ValidationError):
            bus.publish({'type': 'algorithmResults'})


class TestRequests:

    def test_algorithm_request_from_event(self):
        request = AlgorithmRequest.from_event({'name': 'Louvain', 'parameters': {'resolution': '0.5'}})
        assert request.parameters.resolution == 0.5
        assert AlgorithmRequest('Leiden').parameters == CommunityParameters()
        assert AlgorithmRequest('None').parameters is None

    def test_unknown_algorithm(self):
        with pytest.raises(ValidationError):
            AlgorithmRequest('Spectral')

    def test_unknown_channel(self):
        with pytest.raises(ValidationError):
            EncodeRequest('shape', 'score')


class TestAnalysisCoordinator:

    def test_algorithm_request_over_bus(self, two_cliques):
        bus = AnalysisBus()
        coordinator = AnalysisCoordinator(two_cliques, bus=bus)
        received = collect(bus, AlgorithmResults)
        bus.publish(AlgorithmRequest('Leiden'))
        assert len(received) == 1
        message = received[0].to_message()
        assert len(message['communities']) == 2
        assert coordinator.community_result is received[0].result
        assert two_cliques.get_node_attribute('l0', 'community') == 'Community 0'

    def test_none_clears(self, two_cliques):
        coordinator = AnalysisCoordinator(two_cliques)
        received = collect(coordinator.bus, AnalysisCleared)
        coordinator.submit(AlgorithmRequest('Leiden'))
        coordinator.submit(AlgorithmRequest('None'))
        assert received[0].analysis == 'communities'
        assert coordinator.community_result is None
        assert two_cliques.get_node_attribute('l0', 'color') == PREDEFINED_TYPE_COLORS['Gene']

    def test_superseded_request_is_discarded(self, two_cliques):
        detector = BlockingDetector()
        coordinator = AnalysisCoordinator(two_cliques, detector=detector)
        received = collect(coordinator.bus, AlgorithmResults)
        outcome = {}

        def first():
            outcome['first'] = coordinator.submit(
                AlgorithmRequest('Louvain', CommunityParameters(min_community_size=6)))

        thread = threading.Thread(target=first)
        thread.start()
        assert detector.entered.wait(10)

        second = coordinator.submit(AlgorithmRequest('Leiden'))
        detector.release.set()
        thread.join(10)

        assert outcome['first'] is None
        assert coordinator.discarded == 1
        assert received == [second]
        # The graph shows the newer result, not the dissolved communities of the older one
        assert two_cliques.get_node_attribute('l0', 'community') == 'Community 0'
        assert coordinator.community_result is second.result

    def test_path_request(self, gene_graph):
        coordinator = AnalysisCoordinator(gene_graph)
        message = coordinator.submit(PathRequest('g1', 'd1', max_depth=3))
        assert isinstance(message, PathResults)
        assert [p.path for p in message.paths][0] == ['g1', 'p1', 'd1']

    def test_failed_request_is_reported(self, gene_graph):
        coordinator = AnalysisCoordinator(gene_graph)
        received = collect(coordinator.bus, AnalysisFailed)
        message = coordinator.submit(PathRequest('g1', 'nope'))
        assert message is received[0]
        assert message.error_type == 'ValidationError'
        assert 'nope' in message.error

    def test_malformed_metapath_is_reported(self, gene_graph):
        coordinator = AnalysisCoordinator(gene_graph)
        message = coordinator.submit(PathRequest('g1', 'd1', metapath=('Gene',)))
        assert isinstance(message, AnalysisFailed)
        assert message.error_type == 'ComputationError'

    def test_dwpc_request(self, gene_graph):
        coordinator = AnalysisCoordinator(gene_graph)
        message = coordinator.submit(DWPCRequest(DWPCOptions(source='g1', target='d1', max_hops=3)))
        assert isinstance(message, DWPCResults)
        assert message.to_message()['pathCount'] == 2

    def test_dissolved_nodes_can_be_hidden_from_paths(self, chain):
        coordinator = AnalysisCoordinator(chain)
        params = CommunityParameters(min_community_size=10, hide_filtered_from_paths=True)
        coordinator.submit(AlgorithmRequest('Louvain', params))
        message = coordinator.submit(PathRequest('a', 'd'))
        assert message.paths == ()

        coordinator.submit(AlgorithmRequest('Louvain', CommunityParameters(min_community_size=10)))
        assert len(coordinator.submit(PathRequest('a', 'd')).paths) == 1

    def test_encoding_requests(self, make_store):
        store = make_store(['a', 'b'], [])
        coordinator = AnalysisCoordinator(store)
        message = coordinator.submit(EncodeRequest('size', 'score', {'a': 1.0, 'b': 2.0}))
        assert isinstance(message, EncodingResults)
        assert store.get_node_attribute('b', 'size') == 15.0

        cleared = coordinator.submit(EncodeRequest('size', None))
        assert isinstance(cleared, AnalysisCleared)
        assert cleared.analysis == 'encode:size'
        assert store.get_node_attribute('b', 'size') == 5.0

    def test_encoding_failure(self, make_store):
        coordinator = AnalysisCoordinator(make_store(['a'], []))
        message = coordinator.submit(EncodeRequest('size', 'Apoptosis', {'a': 1}, namespace='Pathway'))
        assert isinstance(message, AnalysisFailed)
        assert message.analysis == 'encode:size'

    def test_generations_increase_per_analysis(self, gene_graph):
        coordinator = AnalysisCoordinator(gene_graph)
        first = coordinator.submit(PathRequest('g1', 'd1'))
        second = coordinator.submit(PathRequest('g1', 'd1'))
        dwpc = coordinator.submit(DWPCRequest(DWPCOptions(source='g1', target='d1', max_hops=2)))
        assert (first.generation, second.generation, dwpc.generation) == (1, 2, 1)

    def test_bad_edge_scores_are_reported_not_raised(self, make_store):
        store = make_store([('a', 'Gene'), ('b', 'Gene')], [('a', 'b', 'high')])
        bus = AnalysisBus()
        AnalysisCoordinator(store, bus=bus)
        received = collect(bus, AnalysisFailed)
        bus.publish(AlgorithmRequest('Louvain', CommunityParameters(weighted=True)))
        assert len(received) == 1
        assert received[0].analysis == 'communities'
        assert received[0].error_type == 'ValidationError'
        assert store.get_node_attribute('a', 'community') is None

    def test_unexpected_errors_are_reported(self, two_cliques):
        class BrokenDetector(CommunityDetector):
            def detect(self, view, algorithm='Leiden', parameters=None):
                raise MemoryError("out of memory")

        coordinator = AnalysisCoordinator(two_cliques, detector=BrokenDetector())
        message = coordinator.submit(AlgorithmRequest('Leiden'))
        assert isinstance(message, AnalysisFailed)
        assert message.error_type == 'MemoryError'
        assert coordinator.community_result is None

    def test_path_timeout_is_flagged(self, gene_graph):
        ticks = iter(range(1000))
        engine = PathEngine(clock=lambda: float(next(ticks)))
        coordinator = AnalysisCoordinator(gene_graph, engine=engine)
        message = coordinator.submit(PathRequest('g1', 'd1', timeout_ms=1))
        assert isinstance(message, PathResults)
        assert message.timed_out
        assert message.paths == ()
