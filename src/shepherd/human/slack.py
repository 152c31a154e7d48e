"""Slack integration — operator notifications.

Posts to a Slack webhook when a session needs a human, a phase
completes, a session is lost or a project is quarantined. Delivery is
fire-and-forget; rate limiting belongs to the caller.
"""

from __future__ import annotations

import logging
import os
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

SEVERITY_EMOJI = {
    "info": ":information_source:",
    "success": ":white_check_mark:",
    "warning": ":warning:",
    "error": ":x:",
    "critical": ":rotating_light:",
}


class Notifier(Protocol):
    async def notify(
        self, title: str, message: str, severity: str = "info", project_name: str = "",
    ) -> bool:
        ...


def format_message(title: str, message: str, severity: str, project_name: str) -> str:
    emoji = SEVERITY_EMOJI.get(severity, SEVERITY_EMOJI["info"])
    prefix = f"*{project_name}* " if project_name else ""
    return f"{emoji} {prefix}{title}: {message}"


class SlackNotifier:
    """Minimal Slack webhook notifier."""

    def __init__(self, webhook_url: str = "", timeout: float = 10.0) -> None:
        self._webhook_url = webhook_url or os.environ.get("SHEPHERD_SLACK_WEBHOOK", "")
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._webhook_url)

    async def notify(
        self, title: str, message: str, severity: str = "info", project_name: str = "",
    ) -> bool:
        """Post a message to Slack via webhook. Returns success."""
        text = format_message(title, message, severity, project_name)
        if not self.configured:
            logger.info("[notify] %s", text)
            return False

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self._webhook_url, json={"text": text})
                return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("Slack notification failed: %s", e)
            return False
