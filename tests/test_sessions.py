"""Tests for the file-backed session driver."""

from __future__ import annotations

import json

import pytest

from shepherd.sessions import FileSessionDriver, SessionUnavailable


@pytest.fixture
def driver(tmp_path) -> FileSessionDriver:
    return FileSessionDriver(tmp_path / "sessions")


def _write(driver: FileSessionDriver, session_id: str, data: dict) -> None:
    driver.sessions_dir.mkdir(parents=True, exist_ok=True)
    (driver.sessions_dir / f"{session_id}.json").write_text(json.dumps(data))


class TestCaptureState:
    @pytest.mark.asyncio
    async def test_reads_observation(self, driver):
        _write(driver, "s1", {
            "title": "demo", "cwd": "/work/demo",
            "todos_total": 4, "todos_completed": 2, "can_accept_input": True,
        })
        obs = await driver.capture_state("s1")
        assert obs.todos_remaining == 2
        assert obs.can_accept_input

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, driver):
        with pytest.raises(SessionUnavailable):
            await driver.capture_state("nope")

    @pytest.mark.asyncio
    async def test_malformed_snapshot(self, driver):
        driver.sessions_dir.mkdir(parents=True)
        (driver.sessions_dir / "s1.json").write_text("{oops")
        with pytest.raises(SessionUnavailable):
            await driver.capture_state("s1")

    @pytest.mark.asyncio
    async def test_invalid_field(self, driver):
        _write(driver, "s1", {"todos_total": "many"})
        with pytest.raises(SessionUnavailable):
            await driver.capture_state("s1")


class TestSend:
    @pytest.mark.asyncio
    async def test_send_text_appends_inbox(self, driver):
        _write(driver, "s1", {})
        assert await driver.send_text("s1", "prompt", "continue please")
        assert await driver.send_key("s1", "prompt", "Escape")
        lines = (driver.sessions_dir / "s1.inbox").read_text().splitlines()
        entries = [json.loads(line) for line in lines]
        assert entries[0]["kind"] == "text"
        assert entries[0]["text"] == "continue please"
        assert entries[1]["key"] == "Escape"

    @pytest.mark.asyncio
    async def test_send_to_unknown_session(self, driver):
        assert await driver.send_text("ghost", "", "hi") is False


class TestListSessions:
    @pytest.mark.asyncio
    async def test_lists_candidates(self, driver):
        _write(driver, "a", {"title": "demo: refactor", "cwd": "/work/demo", "captured_at": "2026-03-01T10:00:00"})
        _write(driver, "b", {})
        (driver.sessions_dir / "c.json").write_text("[]")
        candidates = await driver.list_sessions()
        assert [c.session_id for c in candidates] == ["a", "b"]
        assert candidates[0].title == "demo: refactor"
        assert candidates[0].cwd == "/work/demo"

    @pytest.mark.asyncio
    async def test_missing_dir(self, driver):
        assert await driver.list_sessions() == []
