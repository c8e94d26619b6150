from __future__ import annotations


# --- Errors ---
class AgentGuardError(Exception):
    """Base class for agent_guard errors."""


class RuleTableError(AgentGuardError):
    """A built-in rule table is malformed. This is a defaults bug, not a runtime condition."""


class ConfigError(AgentGuardError):
    """Security configuration could not be loaded or validated."""
