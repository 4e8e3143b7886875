"""Storyboard AI: provider-agnostic image generation client for the storyboard editor."""

__version__ = "0.1.0"
