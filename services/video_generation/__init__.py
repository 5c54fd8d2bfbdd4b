"""
Media Generation Service

Provides access to the asynchronous media-generation provider through:
- ProviderClient: submit / status / cancel
- PredictionPoller: hard-deadline polling with recoverable timeouts
- EngineSelector: lane -> model and credit cost
- GeminiCompletionService: captions and prompt synthesis
"""

from .client import GenerationStatus, Prediction, ProviderClient
from .completion import CompletionService, GeminiCompletionService, parse_json_maybe
from .engines import EngineKind, EngineSelection, EngineSelector, Lane
from .poller import PollOptions, PollResult, PredictionPoller

__all__ = [
    "ProviderClient",
    "Prediction",
    "GenerationStatus",
    "PredictionPoller",
    "PollOptions",
    "PollResult",
    "EngineSelector",
    "EngineSelection",
    "EngineKind",
    "Lane",
    "CompletionService",
    "GeminiCompletionService",
    "parse_json_maybe",
]
