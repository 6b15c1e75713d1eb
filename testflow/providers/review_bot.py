"""
Code review bot findings read from pull request comments.

The review bot posts in three places on a pull request: line comments,
conversation comments and review summaries. All three are collected, the
bot's own comments are picked out by author login (or by the bot being named
in the body) and each comment is classified by keyword into critical issues,
warnings, suggestions and resolved items.

A change without a pull request yields ``no_pr_available``. A pull request
the bot has not commented on yet is ``pending``, and one whose comments cannot
be read is ``unavailable``. Neither fails the workflow; both are scored as a
neutral code quality signal rather than as a clean review.
"""

import re
from dataclasses import dataclass, field

import structlog
from github import Auth, Github, GithubException  # type: ignore[import-not-found]

from testflow.models.domain import PR_URL_PATTERN, CodeContext, ReviewResult
from testflow.providers.base import CodeReviewer
from testflow.providers.github_rest import _run_sync

log = structlog.get_logger(__name__)

CRITICAL_MARKERS = ("critical", "security", "vulnerability", "severe", "\U0001f6a8")
WARNING_MARKERS = ("warning", "caution", "concern", "⚠")
RESOLVED_MARKERS = ("resolved", "fixed", "addressed", "✅")

SUGGESTION_PATTERN = re.compile(r"suggestion|apply this diff|recommend|consider", re.IGNORECASE)
SUGGESTION_TEXT = re.compile(r"(?:suggestion|recommend|consider)[^.!?]*(?:[.!?]|$)", re.IGNORECASE)
CRITICAL_TEXT = re.compile(r"(?:critical|security|vulnerability|severe)[^.!?]*(?:[.!?]|$)", re.IGNORECASE)
WARNING_TEXT = re.compile(r"(?:warning|caution|concern)[^.!?]*(?:[.!?]|$)", re.IGNORECASE)

MAX_FINDING_CHARS = 300
MAX_FINDINGS = 10


@dataclass
class BotComment:
    author: str
    body: str


@dataclass
class _Findings:
    critical: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    resolved: int = 0
    minor_fixes: int = 0


def _excerpt(pattern: re.Pattern[str], body: str) -> str:
    match = pattern.search(body)
    text = match.group(0) if match else body
    return text.strip()[:MAX_FINDING_CHARS]


def is_bot_comment(comment: BotComment, bot_login: str) -> bool:
    needle = bot_login.lower()
    return needle in comment.author.lower() or needle in comment.body.lower()


def classify_comments(comments: list[BotComment]) -> ReviewResult:
    """Turn review bot comments into counted findings."""
    findings = _Findings()

    for comment in comments:
        body = comment.body
        lowered = body.lower()

        suggestion_hits = SUGGESTION_PATTERN.findall(body)
        if suggestion_hits:
            findings.minor_fixes += len(suggestion_hits)
            findings.suggestions.extend(s.strip() for s in SUGGESTION_TEXT.findall(body)[:3])

        if any(marker in lowered for marker in CRITICAL_MARKERS):
            findings.critical.append(_excerpt(CRITICAL_TEXT, body))

        if any(marker in lowered for marker in WARNING_MARKERS):
            findings.warnings.append(_excerpt(WARNING_TEXT, body))

        if any(marker in lowered for marker in RESOLVED_MARKERS):
            findings.resolved += 1

        # Suggested diff without suggestion wording
        if "```" in body and "diff" in body and not suggestion_hits:
            findings.minor_fixes += 1
            findings.suggestions.append("Code suggestion found in review")

    warnings = findings.warnings
    warning_count = len(warnings)
    if not warnings and findings.suggestions:
        warnings = findings.suggestions[:5]
        warning_count = len(findings.suggestions)

    insights = [f"Critical: {text}" for text in findings.critical[:MAX_FINDINGS]]
    insights.extend(f"Warning: {text}" for text in warnings[:MAX_FINDINGS])

    return ReviewResult(
        status="complete",
        critical_issues=len(findings.critical),
        warnings=warning_count,
        suggestions=len(findings.suggestions),
        resolved=findings.resolved,
        minor_fixes=findings.minor_fixes,
        insights=insights,
        comment_count=len(comments),
    )


class ReviewBotReviewer(CodeReviewer):
    """Read review bot findings from a GitHub pull request.

    Args:
        token: GitHub token.
        base_url: GitHub API base URL.
        bot_login: Fragment of the bot's login, matched case-insensitively.
    """

    def __init__(
        self,
        token: str | None = None,
        base_url: str = "https://api.github.com",
        bot_login: str = "coderabbit",
    ) -> None:
        self.token = token.strip() if token else None
        self.base_url = base_url.rstrip("/")
        self.bot_login = bot_login
        self._client: Github | None = None

    def _github(self) -> Github:
        if self._client is None:
            auth = Auth.Token(self.token) if self.token else None
            self._client = Github(auth=auth, base_url=self.base_url)
        return self._client

    async def review(self, context: CodeContext) -> ReviewResult:
        match = PR_URL_PATTERN.search(context.pr_url or "")
        if match is None:
            log.info("review_skipped_no_pr", repository=context.repository, branch=context.branch)
            return ReviewResult(status="no_pr_available")

        repository, number = f"{match.group(1)}/{match.group(2)}", int(match.group(3))
        log.info("fetch_review_comments", repository=repository, number=number)

        def _comments() -> list[BotComment]:
            pr = self._github().get_repo(repository).get_pull(number)
            collected = [
                BotComment(c.user.login if c.user else "", c.body or "") for c in pr.get_review_comments()
            ]
            collected.extend(
                BotComment(c.user.login if c.user else "", c.body or "") for c in pr.get_issue_comments()
            )
            collected.extend(
                BotComment(r.user.login if r.user else "", r.body) for r in pr.get_reviews() if r.body
            )
            return collected

        try:
            comments = await _run_sync(_comments)
        except GithubException as e:
            log.warning("review_comments_unavailable", repository=repository, number=number, error=str(e))
            return ReviewResult(status="unavailable")

        bot_comments = [c for c in comments if is_bot_comment(c, self.bot_login)]
        if not bot_comments:
            log.info("review_pending", repository=repository, number=number, comments=len(comments))
            return ReviewResult(status="pending", comment_count=0)
        result = classify_comments(bot_comments)
        log.info(
            "review_findings",
            comments=len(bot_comments),
            critical=result.critical_issues,
            warnings=result.warnings,
            suggestions=result.suggestions,
            resolved=result.resolved,
        )
        return result
