"""Client module for LeetCode interaction."""

from .base import RemoteClient
from .client import LeetCodeClient, html_to_text
from .models import (
    CatalogPage,
    Difficulty,
    JobMode,
    JobResult,
    ListOp,
    ListOpKind,
    PersonalList,
    PollResult,
    ProblemDetail,
    ProblemStatus,
    ProblemSummary,
    UserStats,
)

__all__ = [
    "RemoteClient",
    "LeetCodeClient",
    "html_to_text",
    "CatalogPage",
    "Difficulty",
    "JobMode",
    "JobResult",
    "ListOp",
    "ListOpKind",
    "PersonalList",
    "PollResult",
    "ProblemDetail",
    "ProblemStatus",
    "ProblemSummary",
    "UserStats",
]
