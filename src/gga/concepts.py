"""
GGA Concept Extraction -- raw text to a deterministic set of concept labels.

Concept ids are namespaced ``type:name`` strings:

    pattern:authentication   a topic category matched by the table below
    file:src/login.ts        a filename-like token with a source extension
    error:null_reference     a recognisable error signature
    status:FAILED            review outcome (added by the learner, not here)

The category table is shared with the retrieval pipeline so a diff and a
stored review are described with the same vocabulary.
"""

import re
from typing import List, Pattern, Set, Tuple

__all__ = [
    "CATEGORIES",
    "CONCEPT_TYPES",
    "SOURCE_EXTENSIONS",
    "extract_concepts",
    "detect_categories",
    "concept_type",
    "is_valid_concept",
]

CONCEPT_TYPES = frozenset({"pattern", "file", "error", "status", "keyword"})

MAX_FILE_CONCEPTS = 10


def _disjunction(*words: str) -> Pattern:
    return re.compile("|".join(words), re.IGNORECASE)


def _word(word: str) -> str:
    # Letters only count as word characters: "user_db" and "db2" still match "db"
    return r"(?<![a-z])%s(?![a-z])" % word


# (category, matcher). Matches are a set union, so order only fixes iteration.
# Plain substrings, so identifiers like "login_test.go" or "getApi" match; only
# short words that hide inside ordinary English ("rest", "entry") are guarded.
CATEGORIES: Tuple[Tuple[str, Pattern], ...] = (
    ("authentication", _disjunction(
        "auth", "login", "logout", "session", "token", "jwt", "oauth", "password", "credential")),
    ("security", _disjunction(
        "security", "xss", "injection", "csrf", "sanitize", "escape", "encrypt", "decrypt", "cors")),
    ("database", _disjunction(
        "sql", "query", "database", _word("db"), "postgres", "mysql", "sqlite",
        "select", "insert", "update", "delete")),
    ("api", _disjunction(
        "api", "endpoint", _word("rest"), "graphql", "http", "request", "response", "fetch", "axios")),
    ("validation", _disjunction(
        "validat", "input", "schema", _word("zod"), _word("yup"), _word("joi"), "assert")),
    ("error", _disjunction(
        "error", "exception", "catch", "throw", "fail", "reject", _word("try"), "finally")),
    ("testing", _disjunction(
        "test", _word("spec"), "mock", "stub", "jest", "mocha", "pytest", "unittest")),
    ("performance", _disjunction(
        "perf", "performance", "cache", "optimi[sz]e", "memory", "leak", "slow")),
)

SOURCE_EXTENSIONS = ("ts", "js", "tsx", "jsx", "py", "go", "rs", "sh", "java", "rb", "php")

# Longest extensions first so "login.tsx" is not cut to "login.ts"
_FILE_RE = re.compile(
    r"[A-Za-z0-9_/\-]+\.(?:%s)\b" % "|".join(sorted(SOURCE_EXTENSIONS, key=len, reverse=True))
)

_ERROR_SIGNATURES: Tuple[Tuple[str, Pattern], ...] = (
    ("null_reference", re.compile(r"\bnull\b|\bundefined\b|\bnil\b|nullpointer|none ?type", re.IGNORECASE)),
    ("type_error", re.compile(r"type.*error|cannot.*assign|incompatible", re.IGNORECASE)),
)


def detect_categories(text: str) -> List[str]:
    """Names of every category whose matcher fires anywhere in ``text``."""
    if not text:
        return []
    lowered = text.lower()
    return [name for name, matcher in CATEGORIES if matcher.search(lowered)]


def _file_concepts(text: str, cap: int) -> List[str]:
    found: List[str] = []
    for match in _FILE_RE.finditer(text):
        name = match.group(0)
        if name not in found:
            found.append(name)
            if len(found) >= cap:
                break
    return found


def extract_concepts(text: str, max_files: int = MAX_FILE_CONCEPTS) -> Set[str]:
    """Extract the concept set for a diff, review result, file list or message.

    Pure function of ``text`` and the static tables: identical input always
    yields the identical set, and empty input yields an empty set.
    """
    if not text or not text.strip():
        return set()

    concepts = {f"pattern:{name}" for name in detect_categories(text)}
    concepts.update(f"file:{name}" for name in _file_concepts(text, max_files))
    lowered = text.lower()
    for kind, signature in _ERROR_SIGNATURES:
        if signature.search(lowered):
            concepts.add(f"error:{kind}")
    return concepts


def concept_type(concept_id: str) -> str:
    """``"pattern:auth"`` -> ``"pattern"``."""
    return concept_id.split(":", 1)[0]


def is_valid_concept(concept_id: str) -> bool:
    if not isinstance(concept_id, str) or ":" not in concept_id:
        return False
    ctype, name = concept_id.split(":", 1)
    return ctype in CONCEPT_TYPES and bool(name.strip())
