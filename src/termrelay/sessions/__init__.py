"""Session registry and orchestration."""

from termrelay.sessions.orchestrator import DEFAULT_PROMPT_PATTERN, SessionOrchestrator
from termrelay.sessions.registry import SessionEntry, SessionRegistry

__all__ = ["DEFAULT_PROMPT_PATTERN", "SessionEntry", "SessionOrchestrator", "SessionRegistry"]
