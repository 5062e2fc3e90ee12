"""Agent directory: capability profiles for every known agent."""

from .directory import CAPABILITIES, AgentDirectory, AgentProfile

__all__ = ["CAPABILITIES", "AgentDirectory", "AgentProfile"]
