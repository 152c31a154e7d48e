"""Tests for the Slack notifier and git integration."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from shepherd.human.git import GitManager, SourceControlError
from shepherd.human.slack import SlackNotifier, format_message


class TestSlack:
    def test_format(self):
        text = format_message("Session lost", "gone", "error", "demo")
        assert text == ":x: *demo* Session lost: gone"
        assert format_message("t", "m", "weird", "").startswith(":information_source: t")

    @pytest.mark.asyncio
    async def test_unconfigured_logs_only(self):
        with patch.dict("os.environ", {}, clear=True):
            notifier = SlackNotifier()
        assert not notifier.configured
        assert await notifier.notify("t", "m") is False

    @pytest.mark.asyncio
    async def test_posts_to_webhook(self):
        notifier = SlackNotifier("https://hooks.example/x")
        client = MagicMock()
        client.post = AsyncMock(return_value=MagicMock(status_code=200))
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)

        with patch("shepherd.human.slack.httpx.AsyncClient", return_value=client):
            ok = await notifier.notify("Phase complete", "design", "success", "demo")

        assert ok is True
        url = client.post.call_args.args[0]
        assert url == "https://hooks.example/x"
        assert "*demo* Phase complete" in client.post.call_args.kwargs["json"]["text"]

    @pytest.mark.asyncio
    async def test_http_error_is_failure(self):
        notifier = SlackNotifier("https://hooks.example/x")
        client = MagicMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("down"))
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)

        with patch("shepherd.human.slack.httpx.AsyncClient", return_value=client):
            assert await notifier.notify("t", "m") is False


class TestGit:
    @pytest.mark.asyncio
    async def test_commit(self):
        git = GitManager("/work/demo")
        git._run = AsyncMock(side_effect=[
            ("", "", 0),            # add
            (" M a.py\n", "", 0),   # status
            ("", "", 0),            # commit
            ("abc123\n", "", 0),    # rev-parse
        ])
        assert await git.commit("phase done") == "abc123"
        assert git._run.await_args_list[2].args == ("commit", "-m", "phase done")

    @pytest.mark.asyncio
    async def test_nothing_to_commit(self):
        git = GitManager("/work/demo")
        git._run = AsyncMock(side_effect=[("", "", 0), ("", "", 0)])
        assert await git.commit("phase done") == ""
        assert git._run.await_count == 2

    @pytest.mark.asyncio
    async def test_commit_failure(self):
        git = GitManager("/work/demo")
        git._run = AsyncMock(side_effect=[
            ("", "", 0), (" M a.py\n", "", 0), ("", "hook rejected", 1),
        ])
        with pytest.raises(SourceControlError, match="hook rejected"):
            await git.commit("phase done")

    @pytest.mark.asyncio
    async def test_push_failure(self):
        git = GitManager("/work/demo")
        git._run = AsyncMock(return_value=("", "no remote", 128))
        with pytest.raises(SourceControlError, match="no remote"):
            await git.push("main")
