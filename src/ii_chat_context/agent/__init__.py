"""
Turn orchestration for conversation sessions.
"""

from .executor import ChatExecutor

__all__ = ["ChatExecutor"]
