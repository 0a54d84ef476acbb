"""Low-level stream handling: line reassembly, sanitizing and telemetry."""

from chorus.stream.lines import LineBuffer
from chorus.stream.sanitizer import GEMINI_NOISE, QWEN_NOISE, sanitize
from chorus.stream.telemetry import (
    TelemetryBlock,
    TelemetryDecoder,
    TelemetryExtractor,
    ToolCallDescriptor,
    extract,
)

__all__ = [
    "GEMINI_NOISE",
    "LineBuffer",
    "QWEN_NOISE",
    "TelemetryBlock",
    "TelemetryDecoder",
    "TelemetryExtractor",
    "ToolCallDescriptor",
    "extract",
    "sanitize",
]
