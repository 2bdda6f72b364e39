"""
Analysis bus and coordinator.

Requests and results are typed messages; subscribers register per message
class. The coordinator runs the synchronous analyses and makes sure a result
is only committed and published while its request is still the newest one
of its kind.
"""
import threading
from collections import defaultdict

from .community import CommunityDetector
from .errors import ValidationError
from .graph_store import COMMUNITY_FIELDS, ENCODING_FIELDS
from .messages import (REQUEST_TYPES, RESULT_TYPES, AlgorithmRequest, AlgorithmResults, AnalysisCleared,
                       AnalysisFailed, DWPCRequest, DWPCResults, EncodeRequest, EncodingResults, PathRequest,
                       PathResults)
from .paths import PathEngine
from .visual_encoder import VisualEncoder

MESSAGE_TYPES = REQUEST_TYPES + RESULT_TYPES


class AnalysisBus:
    """Publish/subscribe channel keyed by message class."""

    def __init__(self):
        self._handlers = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, message_type, handler):
        """Register ``handler`` for ``message_type``; returns a callable that unsubscribes."""
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"Unknown message type {message_type!r}")
        with self._lock:
            self._handlers[message_type].append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._handlers[message_type]:
                    self._handlers[message_type].remove(handler)

        return unsubscribe

    def publish(self, message):
        """Deliver ``message`` to its subscribers in registration order; returns their count."""
        message_type = type(message)
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"Cannot publish {message_type.__name__}")
        with self._lock:
            handlers = list(self._handlers[message_type])
        for handler in handlers:
            handler(message)
        return len(handlers)


class AnalysisCoordinator:
    """
    Runs community, path and encoding requests against a GraphStore.

    Every request gets a generation number for its analysis. A result whose
    generation is no longer the newest when it completes is dropped: it is
    neither written to the graph nor published.

    Any exception raised while handling a request is reported as an
    AnalysisFailed message; it never reaches the publisher.

    Parameters:
    -----------
    store : GraphStore
    bus : AnalysisBus, optional
        Requests published on the bus are handled automatically
    detector, engine, encoder : optional
        Component instances; defaults are created when omitted
    verbose : bool, default=False
    """

    def __init__(self, store, bus=None, detector=None, engine=None, encoder=None, verbose=False):
        self.store = store
        self.bus = bus or AnalysisBus()
        self.detector = detector or CommunityDetector(verbose=verbose)
        self.engine = engine or PathEngine(verbose=verbose)
        self.encoder = encoder or VisualEncoder(verbose=verbose)
        self.verbose = verbose
        self.community_result = None
        self.discarded = 0

        self._view = store.read_view()
        self._community_writer = store.writer(node_fields=COMMUNITY_FIELDS)
        self._encoding_writer = store.writer(node_fields=ENCODING_FIELDS)
        self._generations = defaultdict(int)
        self._generation_lock = threading.Lock()
        self._commit_locks = defaultdict(threading.Lock)

        for request_type in REQUEST_TYPES:
            self.bus.subscribe(request_type, self.submit)

    # ------------------------------------------------------------------
    # Generations
    # ------------------------------------------------------------------
    def _begin(self, analysis):
        with self._generation_lock:
            self._generations[analysis] += 1
            # Create the commit lock while holding the generation lock
            self._commit_locks[analysis]
            return self._generations[analysis]

    def is_current(self, analysis, generation):
        with self._generation_lock:
            return self._generations[analysis] == generation

    def _stale(self, analysis, generation):
        if self.is_current(analysis, generation):
            return False
        self.discarded += 1
        if self.verbose:
            print(f"Discarded stale {analysis} result (generation {generation})")
        return True

    def _finish(self, message):
        self.bus.publish(message)
        return message

    def _failed(self, analysis, generation, exc):
        if self._stale(analysis, generation):
            return None
        if self.verbose:
            print(f"{analysis} failed: {exc}")
        return self._finish(AnalysisFailed(generation, analysis, str(exc), type(exc).__name__))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def submit(self, request):
        """
        Handle one request synchronously.

        Returns:
        --------
        result message or None
            None when the request was superseded before it completed
        """
        if isinstance(request, AlgorithmRequest):
            return self._run_algorithm(request)
        if isinstance(request, PathRequest):
            return self._run_paths(request)
        if isinstance(request, DWPCRequest):
            return self._run_dwpc(request)
        if isinstance(request, EncodeRequest):
            return self._run_encoding(request)
        raise ValidationError(f"Unsupported request {type(request).__name__}")

    def _run_algorithm(self, request):
        analysis = 'communities'
        generation = self._begin(analysis)
        try:
            if request.name == 'None':
                with self._commit_locks[analysis]:
                    if self._stale(analysis, generation):
                        return None
                    self.detector.clear(self._community_writer)
                    self.community_result = None
                return self._finish(AnalysisCleared(generation, analysis))

            result = self.detector.detect(self._view, request.name, request.parameters)
            with self._commit_locks[analysis]:
                if self._stale(analysis, generation):
                    return None
                self.detector.apply(self._community_writer, result)
                self.community_result = result
            return self._finish(AlgorithmResults(generation, result))
        except Exception as exc:
            return self._failed(analysis, generation, exc)

    def _path_exclusions(self):
        result = self.community_result
        return result.path_exclusions() if result is not None else frozenset()

    def _run_paths(self, request):
        analysis = 'paths'
        generation = self._begin(analysis)
        try:
            if request.metapath is not None:
                paths = self.engine.find_paths_with_metapath(
                    self._view, request.source, request.target, request.metapath,
                    max_paths=request.max_paths, excluded_nodes=self._path_exclusions(),
                    timeout_ms=request.timeout_ms,
                )
            else:
                paths = self.engine.find_all_paths(
                    self._view, request.source, request.target,
                    max_depth=request.max_depth, max_paths=request.max_paths,
                    directed=request.directed, excluded_nodes=self._path_exclusions(),
                    timeout_ms=request.timeout_ms,
                )
        except Exception as exc:
            return self._failed(analysis, generation, exc)
        if self._stale(analysis, generation):
            return None
        return self._finish(PathResults(generation, request, tuple(paths), timed_out=paths.timed_out))

    def _run_dwpc(self, request):
        analysis = 'dwpc'
        generation = self._begin(analysis)
        try:
            result = self.engine.compute_dwpc(self._view, request.options,
                                              excluded_nodes=self._path_exclusions())
        except Exception as exc:
            return self._failed(analysis, generation, exc)
        if self._stale(analysis, generation):
            return None
        return self._finish(DWPCResults(generation, result))

    def _run_encoding(self, request):
        analysis = f"encode:{request.channel}"
        generation = self._begin(analysis)
        try:
            with self._commit_locks[analysis]:
                if self._stale(analysis, generation):
                    return None
                if not request.selected_property:
                    if request.channel == 'size':
                        self.encoder.clear_size(self._encoding_writer)
                    else:
                        self.encoder.clear_color(self._encoding_writer, self.community_result)
                    message = AnalysisCleared(generation, analysis)
                else:
                    encode = self.encoder.encode_size if request.channel == 'size' else self.encoder.encode_color
                    result = encode(
                        self._encoding_writer, request.selected_property,
                        request.property_values_by_node, request.namespace,
                    )
                    message = EncodingResults(generation, result)
        except Exception as exc:
            return self._failed(analysis, generation, exc)
        return self._finish(message)
