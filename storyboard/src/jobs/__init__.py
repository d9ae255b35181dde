from .registry import JobRegistry, JobSnapshot

__all__ = ["JobRegistry", "JobSnapshot"]
