"""
Material normalization: free text in, canonical keyword list out.

normalize() is pure and total. Canonical keywords are fixed points, so feeding
the output back in (see as_text) yields the same keywords again.
"""

import re
from typing import Iterable, List

# Raw or singular token (or two-word phrase) -> canonical keyword
SYNONYMS = {
    # denim
    "denim jeans": "denim",
    "denim pants": "denim",
    "jeans": "denim",
    "jean": "denim",
    # plastic
    "plastic bottle": "plastic",
    "water bottle": "plastic",
    "bottles": "plastic",
    "bottle": "plastic",
    "pet": "plastic",
    # glass
    "glass jar": "glass",
    "mason jar": "glass",
    "jars": "glass",
    "jar": "glass",
    # cardboard
    "cardboard box": "cardboard",
    "shoe box": "cardboard",
    "boxes": "cardboard",
    "box": "cardboard",
    "carton": "cardboard",
    # wood
    "wooden pallet": "wood",
    "pallets": "wood",
    "pallet": "wood",
    "wooden": "wood",
    "plank": "wood",
    # fabric
    "t shirt": "fabric",
    "tshirt": "fabric",
    "t-shirt": "fabric",
    "shirt": "fabric",
    "cloth": "fabric",
    "textile": "fabric",
    # paper
    "newspaper": "paper",
    "magazine": "paper",
    # metal
    "tin can": "metal",
    "soda can": "metal",
    "can": "metal",
    "tin": "metal",
    "aluminum": "metal",
    "aluminium": "metal",
    "wire": "metal",
    # twine
    "rope": "twine",
    "string": "twine",
    "yarn": "twine",
    "cord": "twine",
}

# Canonical keywords map to themselves so they survive a second pass
for _canonical in set(SYNONYMS.values()):
    SYNONYMS.setdefault(_canonical, _canonical)
del _canonical

STOP_WORDS = frozenset({
    "and", "or", "the", "a", "an", "with", "from", "for", "of", "to", "in",
    "i", "have", "has", "got", "my", "some", "few", "lots", "lot", "many",
    "old", "used", "spare", "leftover", "extra", "piece", "pieces",
})

_SPLIT_RE = re.compile(r"[,;\s]+")
_EDGE_PUNCT_RE = re.compile(r"^[^\w]+|[^\w]+$")
_HAS_LETTER_RE = re.compile(r"[^\W\d_]")


def _strip_inflection(token: str) -> str:
    """One pass of the plural-stripping heuristic."""
    if token.endswith("ies") and len(token) > 3:
        return token[:-3] + "y"
    if token.endswith("es") and len(token) > 3:
        return token[:-2]
    if token.endswith("s") and not token.endswith("ss") and len(token) > 3:
        return token[:-1]
    return token


def singularize(token: str) -> str:
    """Strip inflections until the token stops changing."""
    current = token
    while True:
        stripped = _strip_inflection(current)
        if stripped == current:
            return current
        current = stripped


def _candidates(token: str) -> List[str]:
    """Raw token, token without a plain trailing -s, fully singularized token."""
    candidates = [token]
    if token.endswith("s") and not token.endswith("ss") and len(token) > 3:
        candidates.append(token[:-1])
    candidates.append(singularize(token))
    return candidates


def canonicalize(token: str) -> str:
    """Map a single raw token to its canonical keyword."""
    for candidate in _candidates(token):
        if candidate in SYNONYMS:
            return SYNONYMS[candidate]
    return singularize(token)


def _phrase_match(first: str, second: str):
    for candidate in _candidates(second):
        phrase = f"{first} {candidate}"
        if phrase in SYNONYMS:
            return SYNONYMS[phrase]
    return None


def _clean_tokens(segment: str) -> List[str]:
    tokens = []
    for raw in _SPLIT_RE.split(segment):
        token = _EDGE_PUNCT_RE.sub("", raw)
        if token:
            tokens.append(token)
    return tokens


def normalize(text) -> List[str]:
    """
    Extract canonical material keywords from free text.

    Lowercases, splits on commas and whitespace, folds two-word phrases and
    synonyms onto canonical keywords, strips simple plurals and drops stop
    words and bare quantities. Duplicates collapse, first occurrence wins.
    Returns [] for empty or non-string input.
    """
    if not text or not isinstance(text, str):
        return []

    keywords = {}
    for segment in text.lower().split(","):
        tokens = _clean_tokens(segment)
        i = 0
        while i < len(tokens):
            token = tokens[i]
            if i + 1 < len(tokens):
                phrase = _phrase_match(token, tokens[i + 1])
                if phrase:
                    keywords.setdefault(phrase, None)
                    i += 2
                    continue
            i += 1

            if token in STOP_WORDS or not _HAS_LETTER_RE.search(token):
                continue

            keyword = canonicalize(token)
            if keyword and keyword not in STOP_WORDS:
                keywords.setdefault(keyword, None)

    return list(keywords)


def as_text(keywords: Iterable[str]) -> str:
    """Render keywords back into text that normalize() maps to the same set."""
    return ", ".join(keywords)
