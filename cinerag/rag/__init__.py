"""
RAG (Retrieval-Augmented Generation) core.

Provides embedding providers, the document store abstraction with its
backends, the retrieval engine and the bounded context assembler.
"""

from __future__ import annotations
