"""
Typed request and result messages exchanged over the analysis bus.
"""
from dataclasses import dataclass
from typing import Any, Literal, Mapping, Optional, Tuple, Union

from .community import ALGORITHMS, CommunityParameters, CommunityResult
from .errors import ValidationError
from .paths import DEFAULT_TIMEOUT_MS, DWPCOptions, DWPCResult, PathResult
from .visual_encoder import EncodingResult


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class AlgorithmRequest:
    name: str
    parameters: Optional[CommunityParameters] = None

    def __post_init__(self):
        if self.name not in ALGORITHMS:
            raise ValidationError(f"Unknown clustering algorithm '{self.name}'")
        if self.name != 'None' and self.parameters is None:
            object.__setattr__(self, 'parameters', CommunityParameters())

    @classmethod
    def from_event(cls, payload):
        """Build from an ``{name, parameters?}`` event payload."""
        parameters = payload.get('parameters')
        if parameters is not None and not isinstance(parameters, CommunityParameters):
            parameters = CommunityParameters.from_dict(parameters)
        return cls(name=payload.get('name'), parameters=parameters)


@dataclass(frozen=True)
class PathRequest:
    source: str
    target: str
    max_depth: int = 5
    max_paths: int = 1000
    metapath: Optional[Tuple[str, ...]] = None
    directed: bool = False
    timeout_ms: Optional[float] = DEFAULT_TIMEOUT_MS


@dataclass(frozen=True)
class DWPCRequest:
    options: DWPCOptions


@dataclass(frozen=True)
class EncodeRequest:
    channel: Literal['size', 'color']
    selected_property: Union[str, Tuple[str, ...], None]
    property_values_by_node: Optional[Mapping[str, Any]] = None
    namespace: Optional[str] = None

    def __post_init__(self):
        if self.channel not in ('size', 'color'):
            raise ValidationError(f"Unknown encoding channel '{self.channel}'")


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class AlgorithmResults:
    generation: int
    result: CommunityResult

    def to_message(self):
        return self.result.to_message()


@dataclass(frozen=True)
class AnalysisCleared:
    generation: int
    analysis: str


@dataclass(frozen=True)
class PathResults:
    generation: int
    request: PathRequest
    paths: Tuple[PathResult, ...]
    timed_out: bool = False


@dataclass(frozen=True)
class DWPCResults:
    generation: int
    result: DWPCResult

    def to_message(self):
        return self.result.to_message()


@dataclass(frozen=True)
class EncodingResults:
    generation: int
    result: EncodingResult


@dataclass(frozen=True)
class AnalysisFailed:
    generation: int
    analysis: str
    error: str
    error_type: str


REQUEST_TYPES = (AlgorithmRequest, PathRequest, DWPCRequest, EncodeRequest)
RESULT_TYPES = (AlgorithmResults, AnalysisCleared, PathResults, DWPCResults, EncodingResults, AnalysisFailed)
