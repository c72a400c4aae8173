"""Data models for the coaching core."""

from .analysis import AnalysisResult, CallSummary, cap_response
from .transcript import ConversationContext, TranscriptEntry

__all__ = [
    "AnalysisResult",
    "CallSummary",
    "ConversationContext",
    "TranscriptEntry",
    "cap_response",
]
