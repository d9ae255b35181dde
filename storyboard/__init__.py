"""
Top-level package marker for the storyboard project.

Lets imports like `from storyboard.src.service import StoryboardService`
work in tests, the CLI and the API backend.
"""
__all__ = ["src"]
