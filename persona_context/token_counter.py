"""Token counting utilities."""

from __future__ import annotations

import math
from typing import Callable


def estimate_tokens(text: str) -> int:
    """Conservative estimate without a tokenizer.

    Takes the larger of ~4 chars per token and ~1.3 tokens per word, then
    inflates for structured content (braces/brackets) and code or markup.
    """
    if not text or not text.strip():
        return 0

    words = len(text.split())
    estimated = max(math.ceil(len(text) / 4), math.ceil(words * 1.3))

    if "{" in text or "[" in text:
        estimated = math.ceil(estimated * 1.2)

    if "```" in text or "<" in text:
        estimated = math.ceil(estimated * 1.15)

    return estimated


def create_token_counter(mode: str = "estimate") -> Callable[[str], int]:
    """Factory for token counters.

    Modes:
        "estimate" - word/char heuristic (zero deps)
        "tiktoken" - requires tiktoken package
        "callable:module.path:func" - custom callable
    """
    if mode == "estimate":
        return estimate_tokens

    if mode == "tiktoken":
        try:
            import tiktoken
            enc = tiktoken.get_encoding("cl100k_base")
            return lambda text: len(enc.encode(text))
        except ImportError:
            raise ImportError(
                "tiktoken not installed. Install with: pip install persona-context[tiktoken]"
            )

    if mode.startswith("callable:"):
        # Format: callable:module.path:func_name
        parts = mode[len("callable:"):].rsplit(":", 1)
        if len(parts) != 2:
            raise ValueError(f"Invalid callable counter: {mode}. Expected callable:module:func")
        module_path, func_name = parts
        import importlib
        mod = importlib.import_module(module_path)
        return getattr(mod, func_name)

    raise ValueError(f"Unknown token counter mode: {mode}")
