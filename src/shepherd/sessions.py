"""Session driver — the sensor/actuator boundary.

The core only needs four things from whatever is watching the sessions:
capture an Observation, type text into an input target, press a key,
and list the sessions it can see. SessionDriver is that Protocol.

FileSessionDriver is the bundled implementation. An external capture
process writes one JSON observation per session and drains an inbox:

  sessions/
  ├── <session_id>.json     latest Observation (plus title/cwd metadata)
  └── <session_id>.inbox    JSON lines appended by shepherd, consumed externally
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from shepherd.schemas import Observation, SessionCandidate

logger = logging.getLogger(__name__)


class SessionUnavailable(Exception):
    """The session could not be observed or driven right now."""


class SessionDriver(Protocol):
    """Protocol for capturing session state and simulating input."""

    async def capture_state(self, session_id: str) -> Observation:
        """Return a fresh Observation. Raises SessionUnavailable."""
        ...

    async def send_text(self, session_id: str, target: str, text: str) -> bool:
        """Type `text` into `target` and submit it."""
        ...

    async def send_key(self, session_id: str, target: str, key: str) -> bool:
        """Press a single key (e.g. "Escape") on `target`."""
        ...

    async def list_sessions(self) -> list[SessionCandidate]:
        """Sessions currently visible to the driver."""
        ...


class FileSessionDriver:
    """Driver backed by a directory of observation snapshots and inboxes."""

    def __init__(self, sessions_dir: str | Path) -> None:
        self.sessions_dir = Path(sessions_dir).expanduser()

    def _snapshot_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def _inbox_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.inbox"

    def _read_snapshot(self, session_id: str) -> dict:
        path = self._snapshot_path(session_id)
        if not path.exists():
            raise SessionUnavailable(f"No snapshot for session {session_id}")
        try:
            raw = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise SessionUnavailable(f"Unreadable snapshot for {session_id}: {e}") from e
        if not isinstance(raw, dict):
            raise SessionUnavailable(f"Malformed snapshot for {session_id}")
        return raw

    async def capture_state(self, session_id: str) -> Observation:
        raw = self._read_snapshot(session_id)
        raw.pop("title", None)
        raw.pop("cwd", None)
        try:
            return Observation.model_validate(raw)
        except ValidationError as e:
            raise SessionUnavailable(f"Invalid observation for {session_id}: {e}") from e

    def _append_inbox(self, session_id: str, entry: dict) -> bool:
        if not self._snapshot_path(session_id).exists():
            return False
        entry["timestamp"] = datetime.now().isoformat()
        with open(self._inbox_path(session_id), "a") as f:
            f.write(json.dumps(entry) + "\n")
        return True

    async def send_text(self, session_id: str, target: str, text: str) -> bool:
        ok = self._append_inbox(session_id, {"kind": "text", "target": target, "text": text})
        if ok:
            logger.debug("Queued text for %s: %s", session_id, text[:80])
        return ok

    async def send_key(self, session_id: str, target: str, key: str) -> bool:
        return self._append_inbox(session_id, {"kind": "key", "target": target, "key": key})

    async def list_sessions(self) -> list[SessionCandidate]:
        if not self.sessions_dir.exists():
            return []
        candidates = []
        for path in sorted(self.sessions_dir.glob("*.json")):
            session_id = path.stem
            try:
                raw = self._read_snapshot(session_id)
            except SessionUnavailable as e:
                logger.debug("Skipping session %s: %s", session_id, e)
                continue
            candidates.append(SessionCandidate(
                session_id=session_id,
                title=str(raw.get("title", "")),
                cwd=str(raw.get("cwd", "")),
                last_active=str(raw.get("captured_at", "")),
            ))
        return candidates
