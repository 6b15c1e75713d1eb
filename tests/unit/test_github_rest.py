"""Tests for testflow/providers/github_rest.py."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from github import GithubException

from testflow.enums import ErrorKind
from testflow.exceptions import ExternalServiceError, ValidationError
from testflow.models.domain import TriggerInput
from testflow.providers.github_rest import GitHubSourceProvider

PR_URL = "https://github.com/acme/shop/pull/17"


def _file(filename: str, patch: str | None = "@@ -1 +1 @@\n+x") -> SimpleNamespace:
    return SimpleNamespace(filename=filename, status="modified", additions=1, deletions=0, patch=patch)


@pytest.fixture
def provider() -> GitHubSourceProvider:
    provider = GitHubSourceProvider(token=" ghp_test ")
    provider._client = MagicMock()
    return provider


class TestFetchPullRequest:
    @pytest.mark.asyncio
    async def test_builds_context(self, provider: GitHubSourceProvider):
        pr = MagicMock()
        pr.title = "Add cart helpers"
        pr.body = None
        pr.head.ref = "feature/cart"
        pr.user.login = "alice"
        pr.get_files.return_value = [_file("src/cart.js"), _file("assets/logo.png", patch=None)]
        provider._client.get_repo.return_value.get_pull.return_value = pr

        context = await provider.fetch_context(TriggerInput(pr_url=PR_URL))

        provider._client.get_repo.assert_called_once_with("acme/shop")
        assert context.title == "Add cart helpers"
        assert context.pr_number == 17
        assert context.pr_url == PR_URL
        assert context.branch == "feature/cart"
        assert context.author == "alice"
        assert context.description == ""
        assert context.diff == "diff --git a/src/cart.js b/src/cart.js\n@@ -1 +1 @@\n+x"
        assert [f.filename for f in context.files] == ["src/cart.js", "assets/logo.png"]
        assert context.language == "javascript"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "kind"),
        [(404, ErrorKind.NOT_FOUND), (401, ErrorKind.UNAUTHORIZED), (500, ErrorKind.API_ERROR)],
    )
    async def test_github_errors_classified(self, provider: GitHubSourceProvider, status: int, kind: ErrorKind):
        provider._client.get_repo.side_effect = GithubException(status, {"message": "nope"}, None)

        with pytest.raises(ExternalServiceError) as exc_info:
            await provider.fetch_pull_request("acme/shop", 17)

        assert exc_info.value.kind == kind
        assert exc_info.value.status_code == status


class TestFetchBranch:
    @pytest.mark.asyncio
    async def test_compares_with_default_branch(self, provider: GitHubSourceProvider):
        repo = provider._client.get_repo.return_value
        repo.default_branch = "main"
        repo.compare.return_value.files = [_file("app/models.py")]

        context = await provider.fetch_context(TriggerInput(repository="acme/shop", branch="feature"))

        repo.compare.assert_called_once_with("main", "feature")
        assert context.pr_url is None
        assert context.title == "acme/shop@feature"
        assert context.language == "python"

    @pytest.mark.asyncio
    async def test_trigger_without_reference(self, provider: GitHubSourceProvider):
        with pytest.raises(ValidationError):
            await provider.fetch_context(TriggerInput())


@pytest.mark.asyncio
async def test_close_releases_client(provider: GitHubSourceProvider):
    client = provider._client
    await provider.close()
    client.close.assert_called_once()
    assert provider._client is None
