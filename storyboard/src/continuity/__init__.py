from .checker import apply_fix, check_sequence_continuity, dismiss_issue

__all__ = ["apply_fix", "check_sequence_continuity", "dismiss_issue"]
