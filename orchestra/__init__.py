"""Agent orchestration engine: triggered, bounded, tool-calling agent runs."""

__version__ = "0.1.0"
