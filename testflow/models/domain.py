"""
Domain models exchanged between the orchestrator and its collaborators.

These are the normalized values that cross the collaborator contracts in
:mod:`testflow.providers.base`: what a trigger asks for, what the source host
returns, what the planner and generator produce, what the test runner and
review bot report, and what the issue tracker answers.

Example:
    Building a trigger for a pull request::

        trigger = TriggerInput(
            pr_url="https://github.com/acme/shop/pull/17",
            ticket_key="SHOP-42",
        )
        trigger.validate()
"""

import hashlib
import re
from dataclasses import asdict, dataclass, field
from pathlib import PurePosixPath
from typing import Any

from testflow.enums import ErrorKind
from testflow.exceptions import TicketError, ValidationError

PR_URL_PATTERN = re.compile(r"https://github\.com/([\w.-]+)/([\w.-]+)/pull/(\d+)")

LANGUAGE_BY_EXTENSION = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "javascript",
    ".tsx": "javascript",
    ".py": "python",
    ".java": "java",
}


def detect_language(filenames: list[str]) -> str:
    """Guess the test language from changed file extensions.

    The first recognised extension wins; unknown changes default to javascript.
    """
    for name in filenames:
        language = LANGUAGE_BY_EXTENSION.get(PurePosixPath(name).suffix.lower())
        if language:
            return language
    return "javascript"


def extract_pr_url(text: str | None) -> str | None:
    """Return the first GitHub pull request URL found in ``text``."""
    if not text:
        return None
    match = PR_URL_PATTERN.search(text)
    return match.group(0) if match else None


def code_hash(code: str) -> str:
    """SHA-256 of generated test code, used to correlate repeated runs."""
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


@dataclass
class TriggerInput:
    """Request to start a workflow.

    The code reference is a pull request URL or a repository plus branch
    locator. A trigger may instead carry only a ticket key, in which case the
    pull request linked from that ticket is used.
    """

    pr_url: str | None = None
    """Pull request to generate tests for."""

    repository: str | None = None
    """``owner/name`` locator, used together with ``branch``."""

    branch: str | None = None

    ticket_key: str | None = None
    """Existing ticket the generated tests belong to."""

    project_key: str | None = None
    """Project for new tickets; resolved by the ticket layer when absent."""

    assignee: str | None = None
    summary: str | None = None

    source: str = "manual"
    """Where the trigger came from (``manual`` or ``webhook``)."""

    @property
    def has_code_reference(self) -> bool:
        return bool(self.pr_url or (self.repository and self.branch))

    def validate(self) -> None:
        """Check the trigger can be resolved to a code change.

        A ticket key on its own is accepted; the pull request is then looked
        up on the ticket when the source is fetched.

        Raises:
            ValidationError: If there is neither a code reference nor a
                ticket key, or the given reference is malformed.
        """
        if self.pr_url:
            if not PR_URL_PATTERN.fullmatch(self.pr_url.rstrip("/")):
                raise ValidationError(f"Invalid pull request URL: {self.pr_url}")
            return
        if self.repository and self.branch:
            if "/" not in self.repository:
                raise ValidationError(f"Repository must be owner/name, got: {self.repository}")
            return
        if self.ticket_key:
            return
        raise ValidationError("A pull request URL, repository and branch, or ticket key is required")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ChangedFile:
    """One file touched by the code change."""

    filename: str
    status: str = "modified"
    additions: int = 0
    deletions: int = 0
    patch: str = ""


@dataclass
class CodeContext:
    """Source material fetched for a code change."""

    title: str
    diff: str
    files: list[ChangedFile] = field(default_factory=list)
    description: str = ""
    pr_url: str | None = None
    pr_number: int | None = None
    repository: str | None = None
    branch: str | None = None
    author: str | None = None

    @property
    def language(self) -> str:
        return detect_language([f.filename for f in self.files])


@dataclass
class ReasoningStep:
    """One step of the planner's reasoning trace."""

    description: str
    impact: str = "medium"
    """``high``, ``medium`` or ``low``."""


@dataclass
class TestPlan:
    """Planner output: how many tests of each kind, and why."""

    __test__ = False

    unit_tests: int = 5
    integration_tests: int = 3
    edge_cases: int = 2
    reasoning: str = ""
    reasoning_steps: list[ReasoningStep] = field(default_factory=list)

    @property
    def total_tests(self) -> int:
        return self.unit_tests + self.integration_tests + self.edge_cases


@dataclass
class GeneratedTests:
    """Generator output."""

    code: str
    language: str
    framework: str
    test_count: int
    reasoning: str = ""

    @property
    def code_hash(self) -> str:
        return code_hash(self.code)


@dataclass
class TestRunResult:
    """Reported outcome of running the generated tests.

    Results are accepted as reported; ``simulated`` marks results that were
    not produced by a real test run.
    """

    __test__ = False

    passed: int
    failed: int
    coverage: float = 0.0
    """Line coverage percentage, 0-100."""

    duration_seconds: float = 0.0
    simulated: bool = False

    @property
    def total(self) -> int:
        return self.passed + self.failed

    @property
    def pass_rate(self) -> float:
        return self.passed / self.total if self.total else 0.0


@dataclass
class ReviewResult:
    """Code review bot findings for a pull request.

    ``status`` is ``complete`` when findings were read, ``pending`` when the
    bot has not answered yet, ``unavailable`` when the comments could not be
    read, and ``no_pr_available`` when there is no pull request to review.
    """

    status: str = "complete"
    critical_issues: int = 0
    warnings: int = 0
    suggestions: int = 0
    resolved: int = 0
    minor_fixes: int = 0
    insights: list[str] = field(default_factory=list)
    comment_count: int = 0


@dataclass
class TicketPayload:
    """Content pushed to the issue tracker."""

    summary: str
    description: str
    assignee: str | None = None
    labels: list[str] = field(default_factory=lambda: ["automated-tests"])


@dataclass
class TicketResult:
    """Reference to the ticket holding the workflow output.

    ``synthetic`` results come from the degraded fallback and do not exist in
    the tracker.
    """

    ticket_key: str
    ticket_url: str
    parent_key: str | None = None
    project_key: str | None = None
    synthetic: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TrackerCredentials:
    """Credentials passed explicitly with every tracker call."""

    base_url: str | None
    email: str | None
    api_token: str | None

    @property
    def complete(self) -> bool:
        return bool(self.base_url and self.email and self.api_token)

    @classmethod
    def from_config(cls, config: Any) -> "TrackerCredentials":
        token = config.api_token.get_secret_value() if config.api_token else None
        return cls(base_url=config.base_url, email=config.email, api_token=token)


@dataclass
class TrackerResult:
    """Structured answer from the issue tracker.

    Expected failure classes are reported through ``error_kind`` instead of
    being raised.
    """

    ok: bool
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: ErrorKind | None = None
    message: str | None = None
    status_code: int | None = None

    @classmethod
    def success(cls, data: dict[str, Any] | None = None, status_code: int | None = 200) -> "TrackerResult":
        return cls(ok=True, data=data or {}, status_code=status_code)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, status_code: int | None = None) -> "TrackerResult":
        return cls(ok=False, error_kind=kind, message=message, status_code=status_code)

    def raise_for_error(self, key: str | None = None) -> None:
        """Convert a failed result into a :class:`TicketError`."""
        if not self.ok:
            raise TicketError(self.message or "Issue tracker request failed", self.error_kind or ErrorKind.API_ERROR, key)
