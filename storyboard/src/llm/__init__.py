"""Text capability client, prompt templates and the staged shot planner."""

from . import prompts
from .client import OpenAIStructuredClient, TextCapability
from .planner import PlanResult, ShotPlanner

__all__ = ["OpenAIStructuredClient", "PlanResult", "ShotPlanner", "TextCapability", "prompts"]
