"""
Recall: semantic search and knowledge maintenance engine.
"""

__version__ = "1.0.0"
