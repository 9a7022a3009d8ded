"""
Token counting and truncation utilities using tiktoken.
"""

from functools import lru_cache
from typing import Optional
import tiktoken

from aiteacher.shared.config import settings


@lru_cache(maxsize=8)
def get_encoding(model: Optional[str] = None) -> tiktoken.Encoding:
    """
    Get tiktoken encoding for a model.

    DeepSeek models are not known to tiktoken, so the tokenizer model
    from settings is used as the default.
    """
    model = model or settings.llm.tokenizer_model

    try:
        encoding = tiktoken.encoding_for_model(model)
    except KeyError:
        encoding = tiktoken.get_encoding("cl100k_base")

    return encoding


def count_tokens(text: str, model: Optional[str] = None) -> int:
    """Count tokens in text."""
    encoding = get_encoding(model)
    return len(encoding.encode(text))


def truncate_to_tokens(
    text: str,
    max_tokens: int,
    model: Optional[str] = None,
    suffix: str = "..."
) -> str:
    """
    Truncate text to maximum token count.

    Args:
        text: Text to truncate
        max_tokens: Maximum number of tokens
        model: Model name for encoding selection
        suffix: Suffix to append if truncated

    Returns:
        Truncated text
    """
    encoding = get_encoding(model)
    tokens = encoding.encode(text)

    if len(tokens) <= max_tokens:
        return text

    if not suffix:
        return encoding.decode(tokens[:max_tokens])

    suffix_tokens = count_tokens(suffix, model)
    if max_tokens <= suffix_tokens:
        return suffix

    return encoding.decode(tokens[:max_tokens - suffix_tokens]) + suffix


def estimate_tokens(text: str) -> int:
    """
    Quick token estimation (4 chars per token approximation).
    Use for rough estimates when exact count is expensive.
    """
    return len(text) // 4


def fits_budget(text: str, max_tokens: int) -> bool:
    """Cheap pre-check: True when text is clearly within budget without encoding it."""
    # Byte length bounds the token count from above for BPE encodings
    return len(text.encode("utf-8")) <= max_tokens
