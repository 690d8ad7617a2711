"""Crew insight package."""

from .config import CompletionConfig, PipelineConfig

__all__ = ["CompletionConfig", "PipelineConfig"]
