"""Retrieval-augmented question answering over a local knowledge base."""

__version__ = "0.1.0"
