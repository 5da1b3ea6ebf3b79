"""Configuration management for the IMAP→Mattermost relay."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Sequence

from dotenv import load_dotenv
from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .conditions import Condition, compile_conditions
from .message import DEFAULT_ATTACHMENT_MIME_TYPES, DEFAULT_BODY_MIME_TYPES
from .payload import HeaderStyle

# Load .env early so BaseSettings can pick values up seamlessly.
load_dotenv()

DEFAULT_MESSAGE_TEMPLATE = "#### {subject}\n_From {from}_\n\n{body}"


def _split_list(value: str | Sequence[str] | None, coerce_lower: bool = True) -> list[str]:
    """Turn delimiter-separated env strings into cleaned lists."""
    if value is None:
        return []
    if isinstance(value, str):
        items = re.split(r"[;,]", value)
    else:
        items = list(value)
    cleaned: list[str] = []
    for item in items:
        trimmed = item.strip()
        if not trimmed:
            continue
        cleaned.append(trimmed.lower() if coerce_lower else trimmed)
    return cleaned


class _BlankMissing(dict):
    def __missing__(self, key: str) -> str:
        return ""


def _template_fields(payload: dict[str, Any]) -> _BlankMissing:
    # Nested mappings (matches, headers) blank their missing keys too.
    return _BlankMissing(
        {key: _BlankMissing(value) if isinstance(value, dict) else value for key, value in payload.items()}
    )


_SAMPLE_FIELDS = {
    "message_id": "<sample@example.com>",
    "folder": "INBOX",
    "subject": "",
    "from": "",
    "to": [""],
    "cc": [""],
    "date": "",
    "mime_type": "text/plain",
    "body": "",
    "matches": {},
    "has_attachment": False,
    "raw_mail": "",
    "headers": {},
}


class Settings(BaseSettings):
    """App configuration derived from environment variables."""

    imap_host: str = Field("imap.gmail.com", alias="IMAP_HOST")
    imap_port: int | None = Field(None, alias="IMAP_PORT")
    imap_ssl: bool = Field(True, alias="IMAP_SSL")
    imap_username: str = Field(..., alias="IMAP_USERNAME")
    imap_password: str = Field(..., alias="IMAP_PASSWORD", repr=False)
    imap_timeout: float = Field(60.0, alias="IMAP_TIMEOUT")
    imap_folders_raw: str = Field("INBOX", alias="IMAP_FOLDERS")
    imap_mime_types_raw: str = Field(";".join(DEFAULT_BODY_MIME_TYPES), alias="IMAP_MIME_TYPES")
    imap_attachment_mime_types_raw: str = Field(
        ";".join(DEFAULT_ATTACHMENT_MIME_TYPES), alias="IMAP_ATTACHMENT_MIME_TYPES"
    )
    imap_conditions: dict[str, Any] = Field(default_factory=dict, alias="IMAP_CONDITIONS")
    imap_mark_as_read: bool = Field(False, alias="IMAP_MARK_AS_READ")
    imap_delete: bool = Field(False, alias="IMAP_DELETE")
    imap_event_headers_raw: str = Field("", alias="IMAP_EVENT_HEADERS")
    imap_event_headers_style: HeaderStyle = Field(
        "capitalized", alias="IMAP_EVENT_HEADERS_STYLE"
    )
    imap_include_raw_mail: bool = Field(False, alias="IMAP_INCLUDE_RAW_MAIL")
    imap_abort_on_folder_error: bool = Field(True, alias="IMAP_ABORT_ON_FOLDER_ERROR")
    dry_run: bool = Field(False, alias="DRY_RUN")

    mattermost_server_url: HttpUrl = Field(..., alias="MATTERMOST_SERVER_URL")
    mattermost_team: str = Field(..., alias="MATTERMOST_TEAM")
    mattermost_channel: str = Field(..., alias="MATTERMOST_CHANNEL")
    mattermost_token: str = Field(..., alias="MATTERMOST_TOKEN", repr=False)
    mattermost_message_template: str = Field(
        DEFAULT_MESSAGE_TEMPLATE, alias="MATTERMOST_MESSAGE_TEMPLATE"
    )

    state_db: Path = Field(Path("data/imap_state.db"), alias="STATE_DB")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("imap_port", mode="before")
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @field_validator("imap_port")
    @classmethod
    def _validate_port(cls, value):
        if value is not None and value <= 0:
            raise ValueError("IMAP_PORT must be a positive integer")
        return value

    @field_validator("imap_host", "imap_username", "mattermost_team", "mattermost_channel", "mattermost_token")
    @classmethod
    def _require_non_blank(cls, value: str):
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("mattermost_message_template")
    @classmethod
    def _validate_template(cls, value: str):
        try:
            value.format_map(_template_fields(_SAMPLE_FIELDS))
        except (ValueError, KeyError, IndexError, AttributeError, TypeError) as exc:
            raise ValueError(f"MATTERMOST_MESSAGE_TEMPLATE is not a usable format string: {exc}") from exc
        return value

    @field_validator("imap_conditions")
    @classmethod
    def _validate_conditions(cls, value):
        compile_conditions(value)
        return value

    @model_validator(mode="after")
    def _validate_lists(self):
        if not self.imap_folders:
            raise ValueError("IMAP_FOLDERS should not be empty")
        if not self.imap_mime_types:
            raise ValueError("IMAP_MIME_TYPES should not be empty")
        if not all(mime_type.startswith("text/") for mime_type in self.imap_mime_types):
            raise ValueError('IMAP_MIME_TYPES may only contain strings that match "text/*"')
        return self

    @property
    def imap_folders(self) -> list[str]:
        # Folder names are case sensitive (except INBOX).
        return _split_list(self.imap_folders_raw, coerce_lower=False)

    @property
    def imap_mime_types(self) -> list[str]:
        return _split_list(self.imap_mime_types_raw, coerce_lower=True)

    @property
    def imap_attachment_mime_types(self) -> list[str]:
        return _split_list(self.imap_attachment_mime_types_raw, coerce_lower=True)

    @property
    def imap_event_headers(self) -> list[str]:
        return _split_list(self.imap_event_headers_raw, coerce_lower=False)

    @property
    def conditions(self) -> tuple[Condition, ...]:
        return compile_conditions(self.imap_conditions)

    @property
    def mattermost_base_url(self) -> str:
        return str(self.mattermost_server_url).rstrip("/")

    def render_message(self, payload: dict[str, Any]) -> str:
        """Fill the Mattermost message template; unknown fields render empty."""
        return self.mattermost_message_template.format_map(_template_fields(payload))
