"""
cinerag: retrieval-augmented generation over a titled, tagged catalogue.

Subpackages:
- rag: embedding providers, document stores, retrieval and context assembly
- ingestion: record sources and the batch ingestion pipeline
- generation: pluggable text-generation backends and output schemas
"""

from __future__ import annotations

__version__ = "0.1.0"
