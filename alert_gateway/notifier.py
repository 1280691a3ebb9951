from __future__ import annotations

import logging
from typing import Any

import apprise
from apprise.common import MATCH_ALL_TAG

from .config import AppConfig, normalize_tags


def truncate(raw: Any, max_len: int) -> str:
    text = str(raw or "")
    if len(text) <= max_len:
        return text
    return f"{text[: max_len - 3]}..."


class FailureNotifier:
    """Tells operators, through apprise targets, that an alert could not be created."""

    def __init__(self, config: AppConfig) -> None:
        self.logger = logging.getLogger("alert-gateway.apprise")
        self.apobj = apprise.Apprise()
        self.has_targets = False

        for item in config.apprise_urls:
            url = str(item.get("url") or "").strip()
            if not url:
                continue
            if self.apobj.add(url, tag=normalize_tags(item.get("tags")) or None):
                self.has_targets = True
            else:
                self.logger.warning("failed to load apprise url from APPRISE_URLS_JSON")

    def notify_failure(self, account: str, application: str, team_id: str, error: str) -> str:
        if not self.has_targets:
            return "skipped"

        title = f"[alert-gateway] alert creation failed for {application}"
        body = "\n".join(
            [
                f"ibmAccount: {account}",
                f"application: {application}",
                f"teamID: {team_id}",
                f"error: {error}",
            ]
        )
        result = self.apobj.notify(
            title=truncate(title, 180),
            body=truncate(body, 3500),
            notify_type=apprise.NotifyType.FAILURE,
            body_format=apprise.NotifyFormat.TEXT,
            tag=MATCH_ALL_TAG,
        )

        if result is None:
            return "skipped"
        if result is False:
            raise RuntimeError("apprise notify failed")
        return "sent"
