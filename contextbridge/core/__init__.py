"""
ContextBridge core module.

Provides context aggregation and the tool-orchestration session.
"""

from contextbridge.core.context import ContextAggregator
from contextbridge.core.session import Session, SessionResult, SessionState

__all__ = ["ContextAggregator", "Session", "SessionResult", "SessionState"]
