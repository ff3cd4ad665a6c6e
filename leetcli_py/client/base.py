"""Abstract contract for the remote platform."""

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import (
    CatalogPage,
    JobMode,
    ListOp,
    PersonalList,
    PollResult,
    ProblemDetail,
    ProblemSummary,
    UserStats,
)


class RemoteClient(ABC):
    """Network boundary used by the engine.

    Implementations raise ``NetworkError``, ``AuthError`` or ``RateLimited``
    from ``leetcli_py.errors``; nothing else is expected to escape.
    """

    @abstractmethod
    def fetch_catalog_page(self, cursor: Optional[int]) -> CatalogPage:
        """Fetch one catalog page.

        Args:
            cursor: Opaque position returned by the previous page, or None
                for the first page.

        Returns:
            The page; ``next_cursor`` is None on the last page.
        """

    @abstractmethod
    def fetch_problem_detail(self, slug: str) -> ProblemDetail:
        """Fetch statement, snippets and sample cases for one problem."""

    @abstractmethod
    def submit_code(
        self,
        problem: ProblemSummary,
        language: str,
        code: str,
        mode: JobMode,
        data_input: str = "",
    ) -> str:
        """Start a run or a submission.

        Args:
            problem: Target problem.
            language: Judge language slug, e.g. ``python3``.
            code: Solution source.
            mode: Run against ``data_input`` or full Submit.
            data_input: Sample input for Run mode.

        Returns:
            The remote job id to poll.
        """

    @abstractmethod
    def poll_job(self, remote_job_id: str) -> PollResult:
        """Check the state of a remote job once."""

    @abstractmethod
    def list_personal_lists(self) -> List[PersonalList]:
        """Return every personal list of the signed-in user."""

    @abstractmethod
    def mutate_personal_list(self, op: ListOp) -> Optional[str]:
        """Apply a list edit remotely. Returns the new list id for creates if known."""

    def fetch_username(self) -> Optional[str]:
        """Return the signed-in username, or None when signed out."""
        return None

    @abstractmethod
    def fetch_user_stats(self, username: str) -> UserStats:
        """Return solved/total counts for ``username``."""
