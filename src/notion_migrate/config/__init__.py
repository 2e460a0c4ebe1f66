"""Configuration models and loaders."""

from .config import Config

__all__ = ['Config']
