"""Completion backends, frame decoding and payload extraction."""

from open_completions.llm.client import send
from open_completions.llm.frames import FrameDecoder
from open_completions.llm.generic_http import TemplateCompletionStream
from open_completions.llm.openai_compatible import ChatCompletionStream
from open_completions.llm.stream import CompletionStream

__all__ = [
    "ChatCompletionStream",
    "CompletionStream",
    "FrameDecoder",
    "TemplateCompletionStream",
    "send",
]
