"""BugSentinel: offline-first code snippet manager with AI-assisted analysis."""

__version__ = "0.1.0"
