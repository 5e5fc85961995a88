"""Prompt resolution components.

This package provides:
- Clock time extraction from email bodies
- Template interpolation and structural base + fragment composition
- The prompt resolver and its built-in fallbacks
- Best-effort prompt usage tracking
"""

from tripmail.prompts.resolver import PromptResolver, ResolvedPrompt
from tripmail.prompts.templates import (
    FALLBACK_PARSING_PROMPT,
    ComposedPrompt,
    compose,
    interpolate,
    split_base,
)
from tripmail.prompts.time_hints import (
    NO_TIMES_MESSAGE,
    TimeHint,
    extract_time_hints,
    format_time_hints,
)
from tripmail.prompts.usage import UsageTracker

__all__ = [
    # Resolver
    "PromptResolver",
    "ResolvedPrompt",
    # Templates
    "FALLBACK_PARSING_PROMPT",
    "ComposedPrompt",
    "compose",
    "interpolate",
    "split_base",
    # Time hints
    "NO_TIMES_MESSAGE",
    "TimeHint",
    "extract_time_hints",
    "format_time_hints",
    # Usage
    "UsageTracker",
]
