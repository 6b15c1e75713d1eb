"""Tests for testflow/providers/review_bot.py."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from github import GithubException

from testflow.engine.reward import code_quality_signal
from testflow.enums import StageStatus
from testflow.models.domain import CodeContext
from testflow.models.workflow import CodeReviewRecord
from testflow.providers.review_bot import BotComment, ReviewBotReviewer, classify_comments, is_bot_comment


def _comment(login: str, body: str) -> SimpleNamespace:
    return SimpleNamespace(user=SimpleNamespace(login=login), body=body)


class TestClassifyComments:
    def test_counts_findings_by_keyword(self):
        comments = [
            BotComment("coderabbitai[bot]", "Critical: SQL injection risk in query builder."),
            BotComment("coderabbitai[bot]", "Warning: this loop ignores the empty cart."),
            BotComment("coderabbitai[bot]", "Consider extracting a helper. Resolved in the last commit."),
        ]

        result = classify_comments(comments)

        assert result.status == "complete"
        assert result.critical_issues == 1
        assert result.warnings == 1
        assert result.resolved == 1
        assert result.minor_fixes == 1
        assert result.suggestions == 1
        assert result.comment_count == 3
        assert result.insights[0].startswith("Critical: ")
        assert "Warning: Warning: this loop ignores the empty cart." in result.insights

    def test_suggestions_stand_in_for_missing_warnings(self):
        result = classify_comments([BotComment("coderabbitai", "I recommend adding a null check.")])
        assert result.warnings == 1
        assert result.insights == ["Warning: recommend adding a null check."]

    def test_suggested_diff_counts_as_minor_fix(self):
        result = classify_comments([BotComment("coderabbitai", "```diff\n- a\n+ b\n```")])
        assert result.minor_fixes == 1
        assert result.suggestions == 1

    def test_no_comments(self):
        result = classify_comments([])
        assert (result.critical_issues, result.warnings, result.resolved) == (0, 0, 0)


def test_is_bot_comment():
    assert is_bot_comment(BotComment("CodeRabbitAI[bot]", "text"), "coderabbit")
    assert is_bot_comment(BotComment("alice", "As @coderabbit noted"), "coderabbit")
    assert not is_bot_comment(BotComment("alice", "LGTM"), "coderabbit")


class TestReviewBotReviewer:
    @pytest.mark.asyncio
    async def test_no_pull_request(self):
        context = CodeContext(title="acme/shop@feature", diff="+x", repository="acme/shop", branch="feature")
        result = await ReviewBotReviewer().review(context)
        assert result.status == "no_pr_available"

    @pytest.mark.asyncio
    async def test_reads_only_bot_comments(self, sample_context: CodeContext):
        pr = MagicMock()
        pr.get_review_comments.return_value = [_comment("coderabbitai[bot]", "Warning: unchecked input.")]
        pr.get_issue_comments.return_value = [_comment("alice", "Warning: I disagree")]
        pr.get_reviews.return_value = [_comment("coderabbitai[bot]", "Issue fixed."), _comment("bob", "")]
        reviewer = ReviewBotReviewer(token="ghp_test")
        reviewer._client = MagicMock()
        reviewer._client.get_repo.return_value.get_pull.return_value = pr

        result = await reviewer.review(sample_context)

        reviewer._client.get_repo.assert_called_once_with("acme/shop")
        reviewer._client.get_repo.return_value.get_pull.assert_called_once_with(17)
        assert result.comment_count == 2
        assert result.warnings == 1
        assert result.resolved == 1

    @pytest.mark.asyncio
    async def test_unreadable_comments_score_neutral(self, sample_context: CodeContext):
        reviewer = ReviewBotReviewer()
        reviewer._client = MagicMock()
        reviewer._client.get_repo.side_effect = GithubException(502, {"message": "Bad Gateway"}, None)

        result = await reviewer.review(sample_context)

        assert result.status == "unavailable"
        assert result.comment_count == 0
        record = CodeReviewRecord(status=StageStatus.COMPLETE, bot_status=result.status)
        assert code_quality_signal(record) == 0.5

    @pytest.mark.asyncio
    async def test_bot_silent_is_pending(self, sample_context: CodeContext):
        reviewer = ReviewBotReviewer()
        reviewer._client = MagicMock()
        pr = reviewer._client.get_repo.return_value.get_pull.return_value
        pr.get_review_comments.return_value = []
        pr.get_issue_comments.return_value = [_comment("alice", "LGTM")]
        pr.get_reviews.return_value = []

        result = await reviewer.review(sample_context)

        assert result.status == "pending"
        assert code_quality_signal(CodeReviewRecord(status=StageStatus.COMPLETE, bot_status=result.status)) == 0.5
