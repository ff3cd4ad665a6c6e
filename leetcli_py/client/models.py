"""Data models for LeetCode entities."""

from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Difficulty(str, Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"


class ProblemStatus(str, Enum):
    TODO = "Todo"
    ATTEMPTED = "Attempted"
    SOLVED = "Solved"

    @classmethod
    def from_remote(cls, value: Optional[str]) -> "ProblemStatus":
        """Map the platform's ``ac``/``notac``/null status onto ours."""
        if value == "ac":
            return cls.SOLVED
        if value == "notac":
            return cls.ATTEMPTED
        return cls.TODO


class JobMode(str, Enum):
    RUN = "run"
    SUBMIT = "submit"


def _from_dict(cls, data: Dict[str, Any]):
    """Build a dataclass from a dict, ignoring keys it does not know."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class ProblemSummary:
    """Represents one row of the problem catalog."""

    id: str
    slug: str
    title: str
    difficulty: Difficulty
    frontend_id: str
    tags: Tuple[str, ...] = ()
    status: ProblemStatus = ProblemStatus.TODO
    ac_rate: float = 0.0
    paid_only: bool = False

    @property
    def sort_key(self) -> Tuple[int, str]:
        try:
            return int(self.frontend_id), self.frontend_id
        except ValueError:
            return 1 << 30, self.frontend_id

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["difficulty"] = self.difficulty.value
        data["status"] = self.status.value
        data["tags"] = list(self.tags)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProblemSummary":
        problem = _from_dict(cls, data)
        return replace(
            problem,
            difficulty=Difficulty(problem.difficulty),
            status=ProblemStatus(problem.status),
            tags=tuple(problem.tags),
        )


@dataclass(frozen=True)
class ProblemDetail:
    """Statement, starter code and sample cases for one problem."""

    id: str
    slug: str
    title: str
    frontend_id: str
    difficulty: Difficulty
    content_html: str = ""
    statement: str = ""
    snippets: Dict[str, str] = field(default_factory=dict)
    sample_cases: Tuple[str, ...] = ()
    hints: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    paid_only: bool = False

    @property
    def sample_input(self) -> str:
        """Sample cases joined the way the judge expects ``data_input``."""
        return "\n".join(self.sample_cases)

    def starter_code(self, language: str) -> Optional[str]:
        return self.snippets.get(language)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["difficulty"] = self.difficulty.value
        for name in ("sample_cases", "hints", "tags"):
            data[name] = list(data[name])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProblemDetail":
        detail = _from_dict(cls, data)
        return replace(
            detail,
            difficulty=Difficulty(detail.difficulty),
            snippets=dict(detail.snippets),
            sample_cases=tuple(detail.sample_cases),
            hints=tuple(detail.hints),
            tags=tuple(detail.tags),
        )


@dataclass(frozen=True)
class PersonalList:
    """A user-curated, named list of problem ids."""

    id: str
    name: str
    problem_ids: Tuple[str, ...] = ()
    description: str = ""

    @property
    def is_local(self) -> bool:
        """True until the platform has assigned a real id."""
        return self.id.startswith(LOCAL_LIST_PREFIX)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["problem_ids"] = list(self.problem_ids)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersonalList":
        plist = _from_dict(cls, data)
        return cls(
            id=plist.id,
            name=plist.name,
            problem_ids=tuple(plist.problem_ids),
            description=plist.description or "",
        )


LOCAL_LIST_PREFIX = "local-"


class ListOpKind(str, Enum):
    CREATE = "create"
    DELETE = "delete"
    ADD = "add"
    REMOVE = "remove"


@dataclass(frozen=True)
class ListOp:
    """One user edit of the personal lists."""

    kind: ListOpKind
    list_id: str = ""
    name: str = ""
    problem_id: str = ""

    @classmethod
    def create(cls, name: str) -> "ListOp":
        return cls(ListOpKind.CREATE, name=name)

    @classmethod
    def delete(cls, list_id: str) -> "ListOp":
        return cls(ListOpKind.DELETE, list_id=list_id)

    @classmethod
    def add(cls, list_id: str, problem_id: str) -> "ListOp":
        return cls(ListOpKind.ADD, list_id=list_id, problem_id=problem_id)

    @classmethod
    def remove(cls, list_id: str, problem_id: str) -> "ListOp":
        return cls(ListOpKind.REMOVE, list_id=list_id, problem_id=problem_id)


@dataclass(frozen=True)
class CatalogPage:
    """One page of the catalog enumeration."""

    problems: Tuple[ProblemSummary, ...]
    next_cursor: Optional[int]
    total: int = 0


@dataclass(frozen=True)
class JobResult:
    """Judge output for a finished run or submission."""

    status_msg: str = ""
    status_code: int = -1
    correct_answer: Optional[bool] = None
    total_correct: Optional[int] = None
    total_testcases: Optional[int] = None
    runtime: Optional[str] = None
    memory: Optional[str] = None
    code_output: Tuple[str, ...] = ()
    expected_output: Optional[str] = None
    last_testcase: Optional[str] = None
    compile_error: Optional[str] = None

    ACCEPTED_CODE = 10

    @property
    def status_accepted(self) -> bool:
        return self.status_code == self.ACCEPTED_CODE

    @classmethod
    def from_check(cls, data: Dict[str, Any]) -> "JobResult":
        """Build from the judge's ``check`` response."""
        expected = data.get("expected_output")
        if expected is None and data.get("expected_code_answer"):
            expected = "\n".join(data["expected_code_answer"])
        output = data.get("code_answer") or data.get("code_output") or ()
        if isinstance(output, str):
            output = (output,)
        status_code = data.get("status_code")
        return cls(
            status_msg=data.get("status_msg") or "",
            status_code=-1 if status_code is None else int(status_code),
            correct_answer=data.get("correct_answer"),
            total_correct=data.get("total_correct"),
            total_testcases=data.get("total_testcases"),
            runtime=data.get("status_runtime"),
            memory=data.get("status_memory"),
            code_output=tuple(output),
            expected_output=expected,
            last_testcase=data.get("last_testcase"),
            compile_error=data.get("full_compile_error") or data.get("compile_error"),
        )


@dataclass(frozen=True)
class PollResult:
    """State reported by one poll of a remote job."""

    state: str
    result: Optional[JobResult] = None

    @property
    def finished(self) -> bool:
        return self.state == "SUCCESS"


@dataclass(frozen=True)
class UserStats:
    """Solved/total counts per difficulty."""

    username: str
    solved: Dict[str, int] = field(default_factory=dict)
    totals: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserStats":
        return _from_dict(cls, data)
