"""Authority scores for web domains."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_AUTHORITY = 0.5

# Scores on a 0-100 scale, converted to [0, 1] on lookup.
KNOWN_DOMAINS: dict[str, int] = {
    "wikipedia.org": 90,
    "arxiv.org": 88,
    "nature.com": 95,
    "science.org": 95,
    "nih.gov": 95,
    "who.int": 95,
    "ieee.org": 90,
    "acm.org": 90,
    "springer.com": 85,
    "sciencedirect.com": 85,
    "python.org": 88,
    "docs.python.org": 92,
    "developer.mozilla.org": 92,
    "github.com": 80,
    "stackoverflow.com": 78,
    "reuters.com": 88,
    "apnews.com": 88,
    "bbc.co.uk": 85,
    "bbc.com": 85,
    "nytimes.com": 82,
    "theguardian.com": 80,
    "medium.com": 55,
    "reddit.com": 45,
    "quora.com": 40,
    "pinterest.com": 25,
}

SUFFIX_PATTERNS: list[tuple[str, int]] = [
    (".gov", 90),
    (".mil", 85),
    (".edu", 85),
    (".int", 85),
    (".ac.uk", 85),
    (".ac.jp", 85),
    (".org", 60),
]


def extract_domain(url: str) -> str:
    parsed = urlparse(url if "://" in url else f"//{url}")
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host


class DomainAuthority:
    """Looks up domain authority: overrides, exact domains, parents, then suffixes."""

    def __init__(
        self,
        overrides: dict[str, int] | None = None,
        default: float = DEFAULT_AUTHORITY,
    ) -> None:
        self._table = dict(KNOWN_DOMAINS)
        self._table.update({domain.lower(): score for domain, score in (overrides or {}).items()})
        self._default = default

    @classmethod
    def from_file(cls, path: str | Path, default: float = DEFAULT_AUTHORITY) -> "DomainAuthority":
        """Load overrides from a JSON object mapping domain to a 0-100 score."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        logger.info("Loaded %d domain authority overrides from %s", len(data), path)
        return cls(overrides={str(key): int(value) for key, value in data.items()}, default=default)

    def score(self, url: str | None) -> float:
        if not url:
            return self._default
        domain = extract_domain(url)
        if not domain:
            return self._default
        parts = domain.split(".")
        for start in range(len(parts) - 1):
            candidate = ".".join(parts[start:])
            if candidate in self._table:
                return self._table[candidate] / 100.0
        for suffix, value in SUFFIX_PATTERNS:
            if domain.endswith(suffix):
                return value / 100.0
        return self._default


__all__ = ["DomainAuthority", "DEFAULT_AUTHORITY", "extract_domain"]
