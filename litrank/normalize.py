from __future__ import annotations

"""
Text normalisation helpers shared by the lexical scorer, the domain
filter and the cache.

The goal is to have a single, well-defined place that turns free-form
titles / HTML-laden abstracts / user queries into something reasonably
clean for matching, so queries and documents see the same view of text.

Public helpers:

* basic_clean(text) -> str
    HTML strip + unicode + whitespace; used on every abstract.

* normalize_for_lexical_index(text) -> str
    Heavier normalisation (lower-case, synonyms) used before matching.

* lexical_tokens_for_bm25(text) -> List[str]
    Tokeniser for BM25 that mirrors the above normalisation.

* query_terms(text, min_length) -> List[str]
    Distinct query terms, stop words and short terms dropped.

* normalize_title(text) -> str
    Punctuation-free title used for identity / dedup.
"""

from typing import List
import re
import unicodedata

from bs4 import BeautifulSoup

from . import config

MAX_INPUT_CHARS: int = config.MAX_INPUT_CHARS

_TOKEN_RE = re.compile(r"[a-z0-9_+#]+(?:\.[a-z0-9]+)*")
_WS_RE = re.compile(r"\s+")
_TAG_HINT_RE = re.compile(r"<[a-zA-Z/!][^>]*>")

_SYNONYM_PATTERNS = [
    (
        re.compile(r"(?<![a-z0-9_+#])" + re.escape(src) + r"(?![a-z0-9_+#])"),
        dst,
    )
    for src, dst in sorted(config.SYNONYM_MAP.items(), key=lambda kv: -len(kv[0]))
]

# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------


def _strip_html(text: str) -> str:
    if not text:
        return ""
    # skip the parser for the common plain-text abstract
    if not _TAG_HINT_RE.search(text):
        return text
    soup = BeautifulSoup(text, "html.parser")
    return soup.get_text(" ", strip=True)


def _normalise_unicode(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("\u2018", "'").replace("\u2019", "'")
    text = text.replace("\u201c", '"').replace("\u201d", '"')
    text = text.replace("\u2013", "-").replace("\u2014", "-")
    return text


def _apply_synonyms(text: str) -> str:
    """Token-aware synonym expansion: 'ml' will not rewrite 'html'."""
    out = text
    for pattern, dst in _SYNONYM_PATTERNS:
        out = pattern.sub(dst, out)
    return out


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def basic_clean(text: str | None) -> str:
    """Light-weight clean for titles and abstracts.

    * strips HTML (JATS / inline markup from some providers)
    * normalises unicode and whitespace
    * truncates excessively long inputs
    """
    if text is None:
        return ""
    if not isinstance(text, str):
        text = str(text)

    if len(text) > MAX_INPUT_CHARS:
        text = text[:MAX_INPUT_CHARS]

    text = _strip_html(text)
    text = _normalise_unicode(text)
    return _WS_RE.sub(" ", text).strip()


def normalize_for_lexical_index(text: str | None) -> str:
    """Heavier normalisation used for both documents and queries."""
    norm = basic_clean(text)
    if not norm:
        return ""
    norm = _apply_synonyms(norm.lower())
    return _WS_RE.sub(" ", norm).strip()


def lexical_tokens_for_bm25(text: str | None) -> List[str]:
    """Tokenise text in a BM25-friendly way, preserving term frequencies."""
    norm = normalize_for_lexical_index(text)
    if not norm:
        return []
    return _TOKEN_RE.findall(norm)


def query_terms(text: str | None, min_length: int = config.MIN_TERM_LENGTH) -> List[str]:
    """Distinct, order-preserving query terms that are worth scoring on."""
    seen = set()
    terms: List[str] = []
    for tok in lexical_tokens_for_bm25(text):
        if len(tok) < min_length or tok in config.STOPWORDS or tok in seen:
            continue
        seen.add(tok)
        terms.append(tok)
    return terms


def normalize_query(text: str | None) -> str:
    return normalize_for_lexical_index(text)


def normalize_title(text: str | None) -> str:
    norm = basic_clean(text).lower()
    norm = re.sub(r"[^a-z0-9 ]+", " ", norm)
    return _WS_RE.sub(" ", norm).strip()
