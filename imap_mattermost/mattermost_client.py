"""Mattermost poster: uploads attachments, then posts the message."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Sequence

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .errors import NotifierError
from .models import AttachmentPart, NotificationPayload

logger = logging.getLogger(__name__)

_retry_lookup = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
    reraise=True,
)

# POSTs are not idempotent: only retry when the request never reached the server.
_retry_submit = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type(requests.ConnectTimeout),
    reraise=True,
)


class MattermostClient:
    """Deliver notification payloads to one Mattermost channel."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.session = requests.Session()
        self.session.headers["Authorization"] = f"Bearer {settings.mattermost_token}"
        self.base_url = settings.mattermost_base_url
        self._channel_id: Optional[str] = None

    def notify(self, payload: NotificationPayload, attachments: Sequence[AttachmentPart] = ()) -> str | None:
        """Upload ``attachments`` then post ``payload``; return the post id."""
        try:
            file_ids: list[str] = []
            for attachment in attachments:
                file_ids.extend(self.upload_file(attachment))
            return self.send_message(payload, file_ids)
        except (requests.RequestException, ValueError, KeyError) as exc:
            raise NotifierError(
                f"Mattermost delivery failed for {payload.message_id or payload.subject!r}: {exc}"
            ) from exc

    def channel_id(self) -> str:
        """Resolve (once) the channel id from the configured team and channel names."""
        if self._channel_id is None:
            team = self._get_json(f"/api/v4/teams/name/{self.settings.mattermost_team}")
            channel = self._get_json(
                f"/api/v4/teams/{team['id']}/channels/name/{self.settings.mattermost_channel}"
            )
            self._channel_id = channel["id"]
            logger.debug(
                "Resolved channel %s/%s to %s",
                self.settings.mattermost_team,
                self.settings.mattermost_channel,
                self._channel_id,
            )
        return self._channel_id

    def upload_file(self, attachment: AttachmentPart) -> list[str]:
        logger.info("Uploading file %s", attachment.filename)
        data = {"channel_id": self.channel_id()}
        files = {"files": (attachment.filename, attachment.content, attachment.mime_type)}
        body = self._post("/api/v4/files", data=data, files=files)
        return [info["id"] for info in body.get("file_infos", [])]

    def send_message(self, payload: NotificationPayload, file_ids: Sequence[str] = ()) -> str | None:
        post: Dict[str, Any] = {
            "channel_id": self.channel_id(),
            "message": self.settings.render_message(payload.as_dict()),
            "file_ids": list(file_ids),
        }
        logger.info("Posting to mattermost: %s", payload.message_id or payload.subject)
        body = self._post("/api/v4/posts", data=json.dumps(post), headers={"Content-Type": "application/json"})
        return body.get("id") if isinstance(body, dict) else None

    @_retry_lookup
    def _get_json(self, path: str) -> dict:
        response = self.session.get(f"{self.base_url}{path}", timeout=30)
        if response.status_code >= 400:
            logger.error("Mattermost request failed (%s): %s", response.status_code, response.text)
            response.raise_for_status()
        return response.json()

    @_retry_submit
    def _post(self, path: str, **kwargs) -> dict:
        response = self.session.post(f"{self.base_url}{path}", timeout=60, **kwargs)
        if response.status_code >= 400:
            logger.error("Mattermost request failed (%s): %s", response.status_code, response.text)
            response.raise_for_status()
        return self._parse_response_body(response)

    @staticmethod
    def _parse_response_body(response) -> dict:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
