"""recallkit — memory layer for a personal command assistant."""

__version__ = "0.1.0"
