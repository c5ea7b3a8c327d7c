import logging
import math
from typing import Iterable, Mapping

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

class TokenizerService:
    """
    Heuristic token counter: one token per four characters, rounded up.

    Cheap and dependency-free; it only needs to be close enough to keep the
    prompt under the downstream model's context window.
    """
    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN):
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive.")
        self.chars_per_token = chars_per_token

    def count_tokens(self, text: str) -> int:
        """Estimates the number of tokens in a string."""
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def count_message_tokens(self, messages: Iterable[Mapping[str, str]]) -> int:
        """Estimates the total tokens of role/content messages (content only)."""
        return sum(self.count_tokens(msg["content"]) for msg in messages)
