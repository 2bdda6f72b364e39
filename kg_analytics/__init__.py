"""
KG Analytics - Layout, community detection, path analysis and visual encoding for knowledge graphs.
"""

# Import main classes for easy access
from .graph_store import GraphStore, ReadView, AttributeWriter
from .force_layout import ForceSimulation, LayoutSettings
from .layout_worker import LayoutWorker, LatestTickMailbox, WorkerState
from .community import CommunityDetector, CommunityParameters, CommunityResult
from .paths import PathEngine, DWPCOptions, DWPCResult, FoundPaths
from .visual_encoder import VisualEncoder, EncoderSettings
from .property_registry import PropertyRegistry, default_registry
from .statistics import NetworkAnalyzer, NetworkStatistics, compute_network_statistics
from .analysis_bus import AnalysisBus, AnalysisCoordinator
from .errors import GraphCoreError, ValidationError, ComputationError

# Import core utilities that might be directly useful
from .core_utilities import TimingStats, PerformanceMonitor, SearchBudget, perf_monitor

__all__ = [
    # Main classes
    'GraphStore',
    'ReadView',
    'AttributeWriter',
    'ForceSimulation',
    'LayoutSettings',
    'LayoutWorker',
    'LatestTickMailbox',
    'WorkerState',
    'CommunityDetector',
    'CommunityParameters',
    'CommunityResult',
    'PathEngine',
    'FoundPaths',
    'DWPCOptions',
    'DWPCResult',
    'VisualEncoder',
    'EncoderSettings',
    'PropertyRegistry',
    'default_registry',
    'NetworkAnalyzer',
    'NetworkStatistics',
    'compute_network_statistics',
    'AnalysisBus',
    'AnalysisCoordinator',

    # Errors
    'GraphCoreError',
    'ValidationError',
    'ComputationError',

    # Utility classes
    'TimingStats',
    'PerformanceMonitor',
    'SearchBudget',
    'perf_monitor',
]

# Package metadata
__version__ = '1.0.0'
