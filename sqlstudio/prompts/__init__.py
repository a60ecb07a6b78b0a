"""Prompt templates for the SQL agents."""

from sqlstudio.prompts.loader import PromptLoader

__all__ = ["PromptLoader"]
