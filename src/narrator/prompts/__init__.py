"""Narration prompt construction."""

from .builder import PromptContext, build_prompt, general_locale

__all__ = ["PromptContext", "build_prompt", "general_locale"]
