"""
Shared tokenization helpers: word matching, prompt token estimates and key terms.
"""
from __future__ import annotations

import re
from collections import Counter

import tiktoken

_UNICODE_WORD_RE = re.compile(r"\w+", flags=re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")

_TOKEN_ENCODER = None
_ENCODER_FAILED = False

KEY_TERM_STOPWORDS = frozenset({
    "the", "be", "to", "of", "and", "a", "in", "that", "have", "i",
    "it", "for", "not", "on", "with", "he", "as", "you", "do", "at",
    "this", "but", "his", "by", "from", "they", "we", "say", "her", "she",
    "or", "an", "will", "my", "one", "all", "would", "there", "their", "what",
})


def tokenize_for_matching(text: str, *, min_len: int = 1, limit: int | None = None) -> list[str]:
    """
    Tokenizes text with Unicode-aware word boundaries.
    Keeps letters/numbers from non-Latin scripts and normalizes via casefold().
    """
    safe_min_len = max(1, int(min_len))
    max_tokens = int(limit) if limit is not None else None

    out: list[str] = []
    for raw in _UNICODE_WORD_RE.findall(str(text or "").casefold()):
        token = raw.strip("_")
        if not token:
            continue
        if len(token) < safe_min_len:
            continue
        if not any(ch.isalnum() for ch in token):
            continue
        out.append(token)
        if max_tokens is not None and len(out) >= max_tokens:
            break
    return out


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", str(text or "")).strip()


def _get_token_encoder():
    global _TOKEN_ENCODER, _ENCODER_FAILED
    if _TOKEN_ENCODER is None and not _ENCODER_FAILED:
        try:
            _TOKEN_ENCODER = tiktoken.get_encoding("cl100k_base")
        except Exception:
            # Encoding files are fetched on first use; offline installs fall back to word counts.
            _ENCODER_FAILED = True
    return _TOKEN_ENCODER


def count_tokens(text: str) -> int:
    payload = str(text or "")
    if not payload:
        return 0
    encoder = _get_token_encoder()
    if encoder is not None:
        return int(len(encoder.encode(payload)))
    return max(1, len(tokenize_for_matching(payload, min_len=1)))


def extract_key_terms(text: str, limit: int = 20) -> list[str]:
    """Most frequent non-stopword terms longer than two characters, most frequent first."""
    words = re.sub(r"[^\w\s]", "", str(text or "").lower()).split()
    counts = Counter(word for word in words if len(word) > 2 and word not in KEY_TERM_STOPWORDS)
    return [word for word, _ in counts.most_common(max(0, int(limit)))]
