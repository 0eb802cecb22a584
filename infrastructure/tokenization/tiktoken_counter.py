"""Token counter backed by tiktoken encodings."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

import tiktoken

from domain.interfaces import TokenCounter

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TiktokenConfig:
    encoding_name: str = "cl100k_base"


class TiktokenCounter(TokenCounter):
    """Counts tokens with a BPE encoding, loaded on first use."""

    def __init__(self, config: TiktokenConfig | None = None) -> None:
        self._config = config or TiktokenConfig()
        self._encoding: tiktoken.Encoding | None = None
        self._lock = threading.Lock()

    @property
    def encoding_name(self) -> str:
        return self._config.encoding_name

    def _get_encoding(self) -> tiktoken.Encoding:
        with self._lock:
            if self._encoding is None:
                logger.info("Loading tiktoken encoding %s", self._config.encoding_name)
                self._encoding = tiktoken.get_encoding(self._config.encoding_name)
            return self._encoding

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._get_encoding().encode(text, disallowed_special=()))


__all__ = ["TiktokenCounter", "TiktokenConfig"]
