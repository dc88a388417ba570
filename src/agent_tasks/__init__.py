"""Priority task queue that supervises an external CLI coding agent."""

__version__ = "0.1.0"
