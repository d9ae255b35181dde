from __future__ import annotations

from functools import lru_cache

from storyboard.src.jobs.registry import JobRegistry
from storyboard.src.service import StoryboardService
from storyboard.src.utils.schema import ConfigModel


@lru_cache
def get_config() -> ConfigModel:
    return ConfigModel.load()


@lru_cache
def get_service() -> StoryboardService:
    return StoryboardService.from_config(get_config())


@lru_cache
def get_job_registry() -> JobRegistry:
    return JobRegistry(retention_seconds=get_config().jobs.retention_seconds)
