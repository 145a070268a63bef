"""Open Completions: streaming chat completions against declarative endpoints."""

from open_completions.cancellation import CancelSignal, any_of
from open_completions.config import EndpointProfile, load_profiles
from open_completions.errors import CompletionError
from open_completions.llm import CompletionStream, send
from open_completions.types import ChunkResult, CompletionOptions, CompletionSummary, Message

__all__ = [
    "CancelSignal",
    "ChunkResult",
    "CompletionError",
    "CompletionOptions",
    "CompletionStream",
    "CompletionSummary",
    "EndpointProfile",
    "Message",
    "any_of",
    "load_profiles",
    "send",
]
