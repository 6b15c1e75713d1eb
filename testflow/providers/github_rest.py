"""GitHub source provider implementation using PyGithub."""

import asyncio
from collections.abc import Callable
from typing import TypeVar

import structlog
from github import Auth, Github, GithubException  # type: ignore[import-not-found]
from github.File import File as GHFile  # type: ignore[import-not-found]

from testflow.enums import ErrorKind
from testflow.exceptions import ExternalServiceError, ValidationError
from testflow.models.domain import PR_URL_PATTERN, ChangedFile, CodeContext, TriggerInput
from testflow.providers.base import SourceProvider

log = structlog.get_logger(__name__)

T = TypeVar("T")


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a synchronous function in a thread pool.

    This prevents blocking the event loop when calling synchronous
    PyGithub methods.
    """
    return await asyncio.to_thread(func)


def _build_diff(files: list[GHFile]) -> str:
    """Join per-file patches into a unified diff."""
    parts = []
    for file in files:
        if file.patch:
            parts.append(f"diff --git a/{file.filename} b/{file.filename}")
            parts.append(file.patch)
    return "\n".join(parts)


def _convert_files(files: list[GHFile]) -> list[ChangedFile]:
    return [
        ChangedFile(
            filename=f.filename,
            status=f.status,
            additions=f.additions,
            deletions=f.deletions,
            patch=f.patch or "",
        )
        for f in files
    ]


class GitHubSourceProvider(SourceProvider):
    """Fetch pull requests and branch comparisons from GitHub.

    Args:
        token: GitHub token; anonymous access is used when omitted, which only
            works for public repositories and low request volumes.
        base_url: GitHub API base URL (for GitHub Enterprise).
    """

    def __init__(self, token: str | None = None, base_url: str = "https://api.github.com") -> None:
        self.token = token.strip() if token else None
        self.base_url = base_url.rstrip("/")
        self._client: Github | None = None

    def _github(self) -> Github:
        if self._client is None:
            auth = Auth.Token(self.token) if self.token else None
            self._client = Github(auth=auth, base_url=self.base_url)
        return self._client

    async def close(self) -> None:
        if self._client:
            await _run_sync(self._client.close)
            self._client = None

    async def fetch_context(self, trigger: TriggerInput) -> CodeContext:
        if trigger.pr_url:
            match = PR_URL_PATTERN.search(trigger.pr_url)
            if not match:
                raise ValidationError(f"Invalid pull request URL: {trigger.pr_url}")
            owner, repo, number = match.group(1), match.group(2), int(match.group(3))
            return await self.fetch_pull_request(f"{owner}/{repo}", number, trigger.pr_url)
        if trigger.repository and trigger.branch:
            return await self.fetch_branch(trigger.repository, trigger.branch)
        raise ValidationError("A pull request URL or repository and branch is required")

    async def fetch_pull_request(self, repository: str, number: int, pr_url: str | None = None) -> CodeContext:
        """Fetch a pull request with its changed files."""
        log.info("fetch_pull_request", repository=repository, number=number)

        def _fetch() -> CodeContext:
            repo = self._github().get_repo(repository)
            pr = repo.get_pull(number)
            files = list(pr.get_files())
            return CodeContext(
                title=pr.title,
                diff=_build_diff(files),
                files=_convert_files(files),
                description=pr.body or "",
                pr_url=pr_url or pr.html_url,
                pr_number=number,
                repository=repository,
                branch=pr.head.ref,
                author=pr.user.login if pr.user else None,
            )

        try:
            context = await _run_sync(_fetch)
        except GithubException as e:
            log.error("github_fetch_pr_failed", repository=repository, number=number, error=str(e))
            raise self._service_error(f"Cannot fetch pull request {repository}#{number}", e) from e

        log.info("pull_request_fetched", files_changed=len(context.files), diff_size=len(context.diff))
        return context

    async def fetch_branch(self, repository: str, branch: str) -> CodeContext:
        """Fetch the changes of a branch compared with the default branch.

        There is no pull request, so the context carries no ``pr_url`` and the
        review stage will report ``no_pr_available``.
        """
        log.info("fetch_branch", repository=repository, branch=branch)

        def _fetch() -> CodeContext:
            repo = self._github().get_repo(repository)
            comparison = repo.compare(repo.default_branch, branch)
            files = list(comparison.files)
            return CodeContext(
                title=f"{repository}@{branch}",
                diff=_build_diff(files),
                files=_convert_files(files),
                repository=repository,
                branch=branch,
            )

        try:
            return await _run_sync(_fetch)
        except GithubException as e:
            log.error("github_fetch_branch_failed", repository=repository, branch=branch, error=str(e))
            raise self._service_error(f"Cannot compare branch {branch} of {repository}", e) from e

    @staticmethod
    def _service_error(message: str, error: GithubException) -> ExternalServiceError:
        kind = ErrorKind.NOT_FOUND if error.status == 404 else ErrorKind.API_ERROR
        if error.status == 401:
            kind = ErrorKind.UNAUTHORIZED
        return ExternalServiceError(message, status_code=error.status, kind=kind)
