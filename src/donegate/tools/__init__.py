"""Git plumbing used by churn tracking and prompt variables."""

from .vcs import REF_NAMESPACE, GitError, GitRepository

__all__ = [
    "GitError",
    "GitRepository",
    "REF_NAMESPACE",
]
