"""
Core package for the storyboard shot pipeline.

Provides entity tracking, staged shot planning, reference budgeting,
continuity checking, image rendering, async jobs and CLI tooling.
"""

__all__ = ["cli", "continuity", "entities", "imaging", "jobs", "llm", "references", "utils"]
