"""Nested-completion helpers used by transcript compaction."""

from .summarizer import SUMMARY_HEADER, TranscriptSummarizer, build_transcript
from .tersifier import Tersifier

__all__ = [
    "SUMMARY_HEADER",
    "Tersifier",
    "TranscriptSummarizer",
    "build_transcript",
]
