"""
Prompt similarity scoring used to suggest reusing an existing model instead of
paying for a new generation.
"""
import re
from typing import Set

SHORT_PROMPT_LENGTH = 3
EXACT_MATCH_SCORE = 0.95

_PUNCTUATION = re.compile(r"[^\w\s]")

def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]

def text_similarity(a: str, b: str) -> float:
    """Normalized edit similarity in [0, 1], with shortcuts for exact and substring matches."""
    s1 = a.strip().lower()
    s2 = b.strip().lower()
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return 0.8

    longest = max(len(s1), len(s2))
    if longest == 0:
        return 1.0
    return max(0.0, 1.0 - levenshtein(s1, s2) / longest)

def _keywords(text: str) -> Set[str]:
    return {word for word in _PUNCTUATION.sub(" ", text.lower()).split() if word}

def keyword_similarity(a: str, b: str) -> float:
    """Jaccard index of the two prompts' word sets."""
    words1 = _keywords(a)
    words2 = _keywords(b)
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)

def combined_similarity(prompt: str, candidate: str) -> float:
    # Very short prompts carry almost no keyword signal
    text_score = text_similarity(prompt, candidate)
    keyword_score = keyword_similarity(prompt, candidate)
    if len(prompt.strip()) <= SHORT_PROMPT_LENGTH:
        return text_score * 0.9 + keyword_score * 0.1
    return text_score * 0.7 + keyword_score * 0.3
