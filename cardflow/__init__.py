"""
cardflow - Kanban-card driven analysis and development pipelines.

Polls a board for cards, asks an external AI agent for an implementation
plan or an implementation, and reports the results back on the card.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
