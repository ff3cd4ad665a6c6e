"""Main LeetCode HTTP client."""

import getpass
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from bs4 import BeautifulSoup
from rich.console import Console

from ..config.global_config import GlobalConfig
from ..errors import AuthError, NetworkError, RateLimited, RemoteError
from .base import RemoteClient
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
from .queries import (
    FAVORITES_LIST_QUERY,
    GLOBAL_DATA_QUERY,
    PROBLEM_LIST_QUERY,
    QUESTION_DETAIL_QUERY,
    USER_PROFILE_QUERY,
)


console = Console()
logger = logging.getLogger(__name__)


def html_to_text(html: str) -> str:
    """Strip statement HTML down to readable plain text."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for sup in soup.find_all("sup"):
        sup.replace_with(f"^{sup.get_text()}")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    text = soup.get_text()
    lines = [line.rstrip() for line in text.splitlines()]
    # Collapse runs of blank lines left by block elements
    out: List[str] = []
    for line in lines:
        if not line and out and not out[-1]:
            continue
        out.append(line)
    return "\n".join(out).strip()


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class LeetCodeClient(RemoteClient):
    """HTTP client for the LeetCode GraphQL and REST endpoints."""

    BASE_URL = "https://leetcode.com"
    GRAPHQL_URL = f"{BASE_URL}/graphql"
    RUN_URL = BASE_URL + "/problems/{slug}/interpret_solution/"
    SUBMIT_URL = BASE_URL + "/problems/{slug}/submit/"
    CHECK_URL = BASE_URL + "/submissions/detail/{id}/check/"
    LIST_API_URL = f"{BASE_URL}/list/api/"
    LIST_QUESTIONS_API_URL = f"{BASE_URL}/list/api/questions"

    CATEGORY_SLUG = "all-code-essentials"
    PAGE_SIZE = 100
    TIMEOUT = (5.0, 20.0)

    def __init__(
        self,
        config: Optional[GlobalConfig] = None,
        config_path: Optional[Path] = None,
        page_size: Optional[int] = None,
    ):
        """Initialize the client and restore the saved session."""
        self.config_path = config_path or GlobalConfig.default_path()
        self.config = config if config is not None else GlobalConfig.load(self.config_path)
        self.page_size = page_size or self.PAGE_SIZE
        self.session = requests.Session()
        self._apply_credentials()

    def _apply_credentials(self) -> None:
        self.session.cookies.clear()
        if self.config.session:
            self.session.cookies.set("LEETCODE_SESSION", self.config.session, domain="leetcode.com")
        if self.config.csrf_token:
            self.session.cookies.set("csrftoken", self.config.csrf_token, domain="leetcode.com")

    def _headers(self, referer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Origin": self.BASE_URL,
            "Referer": referer or self.BASE_URL,
        }
        if self.config.csrf_token:
            headers["x-csrftoken"] = self.config.csrf_token
        return headers

    def _request(self, method: str, url: str, referer: Optional[str] = None, **kwargs) -> requests.Response:
        """Send a request and translate failures into our error types."""
        kwargs.setdefault("timeout", self.TIMEOUT)
        try:
            response = self.session.request(method, url, headers=self._headers(referer), **kwargs)
        except requests.RequestException as e:
            raise NetworkError(f"{method} {url}: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthError(f"LeetCode rejected the session (HTTP {status})")
        if status == 429:
            raise RateLimited(
                "LeetCode rate limit hit",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise NetworkError(f"LeetCode returned HTTP {status}")
        if status >= 400:
            raise RemoteError(f"LeetCode returned HTTP {status}: {response.text[:200]}")
        return response

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            # Signed-out sessions get an HTML page instead of JSON
            if "<html" in response.text[:200].lower():
                raise AuthError("LeetCode returned a login page; session expired?") from e
            raise NetworkError(f"Invalid JSON from LeetCode: {e}") from e

    def _graphql(self, query: str, variables: Dict[str, Any], referer: Optional[str] = None) -> Dict[str, Any]:
        response = self._request(
            "POST",
            self.GRAPHQL_URL,
            referer=referer,
            json={"query": query, "variables": variables},
        )
        payload = self._json(response)
        data = payload.get("data") if isinstance(payload, dict) else None
        if data is None:
            errors = payload.get("errors") if isinstance(payload, dict) else None
            raise NetworkError(f"No data in GraphQL response: {errors}")
        return data

    def login(self, session: Optional[str] = None, csrf_token: Optional[str] = None) -> bool:
        """
        Store session cookies copied from the browser.
        If not provided, prompts for them.
        """
        if session is None:
            session = getpass.getpass("LEETCODE_SESSION cookie: ").strip()
        if csrf_token is None:
            csrf_token = getpass.getpass("csrftoken cookie: ").strip()

        self.config.session = session
        self.config.csrf_token = csrf_token
        self._apply_credentials()

        try:
            username = self.fetch_username()
        except RemoteError as e:
            console.print(f"[red]Login error: {e}[/red]")
            return False

        if username is None:
            console.print("[red]Login failed: LeetCode does not recognise this session[/red]")
            return False

        self.config.username = username
        self.config.save(self.config_path)
        console.print(f"[green]Successfully logged in as {username}[/green]")
        return True

    def auto_login(self) -> bool:
        """Check whether the saved session is still valid."""
        if not self.config.has_credentials():
            return False
        try:
            username = self.fetch_username()
        except RemoteError as e:
            logger.warning("Could not verify saved session: %s", e)
            return False
        if username is None:
            return False
        if username != self.config.username:
            self.config.username = username
            self.config.save(self.config_path)
        return True

    def fetch_catalog_page(self, cursor: Optional[int]) -> CatalogPage:
        skip = cursor or 0
        data = self._graphql(
            PROBLEM_LIST_QUERY,
            {
                "categorySlug": self.CATEGORY_SLUG,
                "limit": self.page_size,
                "skip": skip,
                "filters": {},
            },
        )
        listing = data.get("problemsetQuestionList")
        if not listing:
            raise NetworkError("No problem list data in response")

        problems = tuple(self._parse_summary(q) for q in listing.get("questions") or [])
        total = int(listing.get("total") or 0)
        fetched = skip + len(problems)
        next_cursor = fetched if problems and fetched < total else None
        return CatalogPage(problems=problems, next_cursor=next_cursor, total=total)

    @staticmethod
    def _parse_summary(question: Dict[str, Any]) -> ProblemSummary:
        return ProblemSummary(
            id=str(question.get("questionId") or question["frontendQuestionId"]),
            slug=question["titleSlug"],
            title=question["title"],
            difficulty=Difficulty(question["difficulty"]),
            frontend_id=str(question["frontendQuestionId"]),
            tags=tuple(t["slug"] for t in question.get("topicTags") or []),
            status=ProblemStatus.from_remote(question.get("status")),
            ac_rate=float(question.get("acRate") or 0.0),
            paid_only=bool(question.get("isPaidOnly")),
        )

    def fetch_problem_detail(self, slug: str) -> ProblemDetail:
        data = self._graphql(
            QUESTION_DETAIL_QUERY,
            {"titleSlug": slug},
            referer=f"{self.BASE_URL}/problems/{slug}/",
        )
        question = data.get("question")
        if not question:
            raise RemoteError(f"No question data for {slug}")

        cases = question.get("exampleTestcaseList")
        if not cases and question.get("sampleTestCase"):
            cases = [question["sampleTestCase"]]

        content = question.get("content") or ""
        return ProblemDetail(
            id=str(question["questionId"]),
            slug=question["titleSlug"],
            title=question["title"],
            frontend_id=str(question["frontendQuestionId"]),
            difficulty=Difficulty(question["difficulty"]),
            content_html=content,
            statement=html_to_text(content),
            snippets={s["langSlug"]: s["code"] for s in question.get("codeSnippets") or []},
            sample_cases=tuple(cases or ()),
            hints=tuple(html_to_text(h) for h in question.get("hints") or []),
            tags=tuple(t["slug"] for t in question.get("topicTags") or []),
            paid_only=bool(question.get("isPaidOnly")),
        )

    def submit_code(
        self,
        problem: ProblemSummary,
        language: str,
        code: str,
        mode: JobMode,
        data_input: str = "",
    ) -> str:
        referer = f"{self.BASE_URL}/problems/{problem.slug}/"
        body = {"lang": language, "question_id": problem.id, "typed_code": code}
        if mode == JobMode.RUN:
            body["data_input"] = data_input
            url = self.RUN_URL.format(slug=problem.slug)
            id_field = "interpret_id"
        else:
            url = self.SUBMIT_URL.format(slug=problem.slug)
            id_field = "submission_id"

        payload = self._json(self._request("POST", url, referer=referer, json=body))
        if payload.get("error"):
            raise RemoteError(f"LeetCode: {payload['error']}")
        remote_id = payload.get(id_field)
        if remote_id is None:
            raise RemoteError(f"No {id_field} in response")
        return str(remote_id)

    def poll_job(self, remote_job_id: str) -> PollResult:
        response = self._request("GET", self.CHECK_URL.format(id=remote_job_id))
        payload = self._json(response)
        state = payload.get("state") or "PENDING"
        result = JobResult.from_check(payload) if state == "SUCCESS" else None
        return PollResult(state=state, result=result)

    def list_personal_lists(self) -> List[PersonalList]:
        data = self._graphql(FAVORITES_LIST_QUERY, {})
        favorites = (data.get("favoritesLists") or {}).get("allFavorites") or []
        return [
            PersonalList(
                id=fav["idHash"],
                name=fav["name"],
                problem_ids=tuple(str(q["questionId"]) for q in fav.get("questions") or []),
                description=fav.get("description") or "",
            )
            for fav in favorites
        ]

    def mutate_personal_list(self, op: ListOp) -> Optional[str]:
        if op.kind == ListOpKind.CREATE:
            response = self._request("POST", self.LIST_API_URL, json={"name": op.name})
            try:
                payload = response.json()
            except ValueError:
                return None
            return payload.get("id_hash") if isinstance(payload, dict) else None
        if op.kind == ListOpKind.DELETE:
            self._request("DELETE", f"{self.LIST_API_URL}{op.list_id}")
        elif op.kind == ListOpKind.ADD:
            self._request(
                "POST",
                self.LIST_QUESTIONS_API_URL,
                json={"favorite_id_hash": op.list_id, "question_id": op.problem_id},
            )
        elif op.kind == ListOpKind.REMOVE:
            self._request("DELETE", f"{self.LIST_QUESTIONS_API_URL}/{op.list_id}/{op.problem_id}")
        return None

    def fetch_username(self) -> Optional[str]:
        data = self._graphql(GLOBAL_DATA_QUERY, {})
        status = data.get("userStatus") or {}
        if status.get("isSignedIn"):
            return status.get("username")
        return None

    def fetch_user_stats(self, username: str) -> UserStats:
        data = self._graphql(USER_PROFILE_QUERY, {"username": username})
        matched = data.get("matchedUser") or {}
        solved = (matched.get("submitStats") or {}).get("acSubmissionNum") or []
        totals = data.get("allQuestionsCount") or []
        return UserStats(
            username=username,
            solved={d["difficulty"]: int(d["count"]) for d in solved},
            totals={d["difficulty"]: int(d["count"]) for d in totals},
        )
