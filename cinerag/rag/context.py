"""
Context assembly: format ranked documents into a bounded prompt block.

One line per document, ``"{title} - {tag, tag}"``, in ranked order. The
block is capped by document count and by characters so a large corpus
cannot blow up the generation request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cinerag.rag.types import RankedResult

LOG = logging.getLogger("rag.context")


@dataclass
class ContextAssembler:
    """Bounded formatter for retrieval results."""

    max_documents: int = 20
    max_chars: int = 8000

    def __post_init__(self) -> None:
        if self.max_documents <= 0:
            raise ValueError("max_documents must be positive")
        if self.max_chars <= 0:
            raise ValueError("max_chars must be positive")

    def assemble(self, results: list[RankedResult]) -> str:
        return self.assemble_with_count(results)[0]

    def assemble_with_count(self, results: list[RankedResult]) -> tuple[str, int]:
        """
        Join result lines until either budget is reached.

        Returns the context and how many leading results it covers.

        Whole lines are dropped once the budget is spent. A first line that
        alone exceeds ``max_chars`` is cut to ``max_chars``.
        """
        lines: list[str] = []
        total_chars = 0

        for result in results[: self.max_documents]:
            line = result.document.content
            cost = len(line) + (1 if lines else 0)  # newline separator
            if total_chars + cost > self.max_chars:
                if not lines:
                    lines.append(line[: self.max_chars])
                break
            lines.append(line)
            total_chars += cost

        if len(lines) < len(results):
            LOG.debug("Context truncated to %d of %d documents", len(lines), len(results))
        return "\n".join(lines), len(lines)
