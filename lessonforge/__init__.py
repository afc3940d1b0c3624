"""
lessonforge - Resumable, rate-limit tolerant LLM generation over many units.

Runs a generation stage over groups of units with bounded concurrency,
retries transient provider failures, salvages malformed JSON responses,
and checkpoints after every group so interrupted runs pick up where they
left off.
"""

from .version import __version__

__all__ = ["__version__"]
