"""Agent Dispatcher — task routing, delegation, suggestions and startup workflows."""

__version__ = "0.1.0"
