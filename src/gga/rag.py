"""
GGA Retrieval Pipeline -- historical review context for a new review prompt.

    patterns  = extract_patterns(files, diff, commit_msg)
    items     = retrieve(patterns)            hybrid search + recency boost
    context   = build_context(items)          token-budgeted markdown
    prompt'   = augment_prompt(prompt, ...)   prompt + "Project Historical Context"

``augment_prompt`` never raises: whenever augmentation cannot or should not
run, the original prompt comes back untouched.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from gga.concepts import detect_categories
from gga.config import Settings
from gga.exceptions import GGAError, MalformedInputError
from gga.search import HybridSearch, RetrievedItem

logger = logging.getLogger("gga.rag")

__all__ = ["RetrievalPipeline", "extract_patterns", "CATEGORY_PHRASES"]

# Category -> search phrase added to the query when the diff touches it
CATEGORY_PHRASES: Dict[str, str] = {
    "authentication": "authentication security",
    "database": "database query",
    "api": "api endpoint",
    "security": "security vulnerability",
    "validation": "validation",
    "error": "error handling",
    "testing": "testing",
    "performance": "performance",
}

ASK_LIMIT = 10

_GUIDANCE = """**Additional instructions:**
- Consider this historical context when reviewing the code
- If you find patterns similar to previous issues, mention them
- Maintain consistency with past decisions and solutions
- Apply lessons learned from previous reviews"""


def extract_patterns(files: str = "", diff: str = "", commit_msg: str = "") -> str:
    """Build a retrieval query from file names, diff topics and the commit message."""
    if isinstance(files, (list, tuple)):
        files = " ".join(files)
    parts: List[str] = []
    if files and files.strip():
        parts.append(files.strip())
    if diff:
        for category in detect_categories(diff):
            parts.append(CATEGORY_PHRASES[category])
    if commit_msg and commit_msg.strip():
        parts.append(commit_msg.strip())
    return " ".join(parts)


def recency_multiplier(age_days: float, boost: float, window_days: int) -> float:
    """1 + boost * (1 - age / window) inside the window, 1.0 outside it."""
    if age_days < window_days:
        return 1.0 + boost * (1.0 - age_days / window_days)
    return 1.0


class RetrievalPipeline:
    def __init__(self, store, search: HybridSearch, settings: Settings):
        self.store = store
        self.search = search
        self.settings = settings

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def retrieve(
        self,
        query: str,
        project: Optional[str] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[RetrievedItem]:
        """Hybrid search boosted toward recent reviews, best first."""
        if not query or not query.strip():
            raise MalformedInputError("Retrieval query must not be empty")
        limit = limit or self.settings.context_limit
        now = now or datetime.now(timezone.utc)

        candidates = self.search.hybrid_search(
            query, alpha=self.settings.rag_alpha, limit=limit * 3, project=project
        )
        boosted: List[RetrievedItem] = []
        for item in candidates:
            record = self.store.get_item(item.id)
            if record is None:
                continue
            mult = recency_multiplier(
                record.age_days(now), self.settings.recency_boost, self.settings.recency_days
            )
            score = item.score * mult
            if score < self.settings.min_similarity:
                continue
            item.score = score
            boosted.append(item)

        boosted.sort(key=lambda r: (-r.score, r.id))
        logger.debug("retrieve %r: %d candidates, %d kept", query[:60], len(candidates), len(boosted[:limit]))
        return boosted[:limit]

    # ------------------------------------------------------------------
    # Context assembly
    # ------------------------------------------------------------------

    def build_context(self, items: List[RetrievedItem]) -> str:
        """Markdown block of review entries, stopping before the token budget is exceeded."""
        cap = self.settings.result_char_cap
        entries: List[str] = []
        tokens = 0
        for item in items:
            record = self.store.get_item(item.id)
            if record is None:
                continue
            result = record.result
            if len(result) > cap:
                result = result[:cap] + "..."
            # ~4 characters per token plus a fixed allowance for the entry frame
            entry_tokens = len(result) // 4 + self.settings.entry_token_overhead
            if tokens + entry_tokens > self.settings.max_tokens:
                break
            tokens += entry_tokens
            entries.append(
                f"### Review #{len(entries) + 1} (Relevance: {round(item.score * 100)}%)\n"
                f"- **Status:** {record.status}\n"
                f"- **Files:** {record.files}\n"
                f"- **Findings:** {result}\n"
                "---"
            )
        return "\n".join(entries)

    # ------------------------------------------------------------------
    # Prompt augmentation
    # ------------------------------------------------------------------

    def augment_prompt(self, prompt: str, files: str = "", diff: str = "", commit_msg: str = "") -> str:
        """Append relevant history to ``prompt``, or return it unchanged."""
        if not self.settings.rag_enabled:
            return prompt
        try:
            count = self.store.count_items()
            if count < self.settings.rag_min_items:
                logger.debug("RAG skipped: %d reviews in history (minimum %d)", count, self.settings.rag_min_items)
                return prompt
            query = extract_patterns(files, diff, commit_msg)
            if not query:
                return prompt
            items = self.retrieve(query)
            if not items:
                return prompt
            context = self.build_context(items)
            if not context:
                return prompt
        except GGAError as e:
            logger.warning(f"RAG augmentation failed, using original prompt: {e}")
            return prompt
        except Exception as e:
            logger.warning(f"Unexpected RAG failure, using original prompt: {e}")
            return prompt

        return (
            f"{prompt}\n\n"
            "---\n"
            "## Project Historical Context\n\n"
            "The following are previous reviews relevant to the current code:\n"
            f"{context}\n\n"
            f"{_GUIDANCE}\n"
        )

    # ------------------------------------------------------------------
    # Ask / status
    # ------------------------------------------------------------------

    def ask(self, question: str, project: Optional[str] = None) -> str:
        """Historical context relevant to a free-form question."""
        if not question or not question.strip():
            raise MalformedInputError("Question must not be empty")
        items = self.retrieve(question, project=project, limit=ASK_LIMIT)
        context = self.build_context(items) if items else ""
        if not context:
            return "No relevant historical context found for your question."
        return (
            "## Relevant Historical Context\n\n"
            f'Based on your question: "{question.strip()}"\n\n'
            "The following related reviews were found:\n"
            f"{context}\n"
        )

    def available(self) -> Dict[str, Any]:
        if not self.settings.rag_enabled:
            return {"available": False, "reviews": None, "reason": "RAG disabled (GGA_RAG_ENABLED=false)"}
        count = self.store.count_items()
        if count < self.settings.rag_min_items:
            return {
                "available": False,
                "reviews": count,
                "reason": f"Insufficient history: {count} reviews (minimum: {self.settings.rag_min_items})",
            }
        return {"available": True, "reviews": count, "reason": f"RAG available: {count} reviews in history"}

    def stats(self) -> Dict[str, Any]:
        return {
            "total_reviews": self.store.count_items(),
            "passed": self.store.count_items(status="PASSED"),
            "failed": self.store.count_items(status="FAILED"),
            "enabled": self.settings.rag_enabled,
            "min_similarity": self.settings.min_similarity,
            "context_limit": self.settings.context_limit,
        }
