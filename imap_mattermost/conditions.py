"""Declarative conditions deciding whether a mail should be relayed."""

from __future__ import annotations

import enum
import fnmatch
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

from .errors import EvaluationError
from .message import DEFAULT_BODY_MIME_TYPES, MailMessage
from .models import MatchResult

logger = logging.getLogger(__name__)

# Accept Ruby/PCRE style named groups, (?<name>...), next to Python's (?P<name>...).
_NAMED_GROUP = re.compile(r"\(\?<(?![=!])")

_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


class ConditionKind(str, enum.Enum):
    SUBJECT = "subject"
    BODY = "body"
    FROM = "from"
    TO = "to"
    CC = "cc"
    HAS_ATTACHMENT = "has_attachment"
    IS_UNREAD = "is_unread"


ADDRESS_HEADERS = {
    ConditionKind.FROM: "From",
    ConditionKind.TO: "To",
    ConditionKind.CC: "Cc",
}


@dataclass(frozen=True)
class Condition:
    """One compiled condition: a kind plus the payload its handler needs."""

    kind: ConditionKind
    source: Any
    regex: Optional[re.Pattern[str]] = None
    globs: tuple[re.Pattern[str], ...] = ()
    flag: Optional[bool] = None


def boolify(value: Any) -> Optional[bool]:
    """Interpret JSON/env style booleans; ``None`` for anything else."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def compile_regex(pattern: str) -> re.Pattern[str]:
    return re.compile(_NAMED_GROUP.sub("(?P<", pattern))


def expand_braces(pattern: str) -> list[str]:
    """Expand shell style ``{a,b}`` alternatives, nested ones included."""
    depth = 0
    start = None
    for index, char in enumerate(pattern):
        if char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}":
            if depth == 0:
                raise ValueError(f"unbalanced '}}' in glob pattern {pattern!r}")
            depth -= 1
            if depth == 0:
                head, tail = pattern[:start], pattern[index + 1:]
                alternatives = _split_alternatives(pattern[start + 1:index])
                return [
                    expanded
                    for alternative in alternatives
                    for expanded in expand_braces(head + alternative + tail)
                ]
    if depth:
        raise ValueError(f"unbalanced '{{' in glob pattern {pattern!r}")
    return [pattern]


def _split_alternatives(body: str) -> list[str]:
    parts, depth, current = [], 0, []
    for char in body:
        if char == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
        current.append(char)
    parts.append("".join(current))
    return parts


def compile_glob(pattern: str) -> list[re.Pattern[str]]:
    """Translate one glob into case-insensitive regexes, one per brace expansion."""
    return [
        re.compile(fnmatch.translate(expanded), re.IGNORECASE)
        for expanded in expand_braces(pattern)
    ]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, tuple, dict)) and len(value) == 0)


def compile_conditions(raw: Optional[Mapping[str, Any]]) -> tuple[Condition, ...]:
    """Validate and compile a ``{kind: value}`` mapping.

    Blank values are dropped (they always pass). Unknown kinds are logged and
    dropped. Any invalid value raises ``ValueError``.
    """
    if raw is None:
        return ()
    if not isinstance(raw, Mapping):
        raise ValueError("conditions must be a mapping")

    compiled: list[Condition] = []
    for key, value in raw.items():
        try:
            kind = ConditionKind(key)
        except ValueError:
            logger.warning("Unknown condition key ignored: %s", key)
            continue
        if _is_blank(value):
            continue

        if kind in (ConditionKind.SUBJECT, ConditionKind.BODY):
            if not isinstance(value, str):
                raise ValueError(f"conditions.{key} contains a non-string object")
            try:
                regex = compile_regex(value)
            except re.error as exc:
                raise ValueError(f"conditions.{key} contains an invalid regexp: {exc}") from exc
            compiled.append(Condition(kind=kind, source=value, regex=regex))
        elif kind in ADDRESS_HEADERS:
            patterns = [value] if isinstance(value, str) else value
            if not isinstance(patterns, (list, tuple)):
                raise ValueError(f"conditions.{key} must be a string or an array of strings")
            globs: list[re.Pattern[str]] = []
            for pattern in patterns:
                if not isinstance(pattern, str):
                    raise ValueError(f"conditions.{key} contains a non-string object")
                try:
                    globs.extend(compile_glob(pattern))
                except (ValueError, re.error) as exc:
                    raise ValueError(
                        f"conditions.{key} contains an invalid glob pattern: {exc}"
                    ) from exc
            compiled.append(Condition(kind=kind, source=value, globs=tuple(globs)))
        else:
            flag = boolify(value)
            if flag is None:
                raise ValueError(f"conditions.{key} must be a boolean value or null")
            compiled.append(Condition(kind=kind, source=value, flag=flag))
    return tuple(compiled)


def unread_filter(conditions: Sequence[Condition]) -> Optional[bool]:
    """The ``is_unread`` flag the scanner should enforce, if any."""
    for condition in conditions:
        if condition.kind is ConditionKind.IS_UNREAD:
            return condition.flag
    return None


Handler = Callable[[Condition, MailMessage, MatchResult], bool]


class ConditionEvaluator:
    """Run every condition against a mail; all of them must pass."""

    def __init__(
        self,
        conditions: Sequence[Condition],
        mime_types: Sequence[str] = DEFAULT_BODY_MIME_TYPES,
    ) -> None:
        self.conditions = tuple(conditions)
        self.mime_types = tuple(mime_types)
        self._handlers: dict[ConditionKind, Handler] = {
            ConditionKind.SUBJECT: self._match_subject,
            ConditionKind.BODY: self._match_body,
            ConditionKind.FROM: self._match_addresses,
            ConditionKind.TO: self._match_addresses,
            ConditionKind.CC: self._match_addresses,
            ConditionKind.HAS_ATTACHMENT: self._match_has_attachment,
            ConditionKind.IS_UNREAD: self._match_is_unread,
        }

    def evaluate(self, message: MailMessage) -> MatchResult:
        result = MatchResult(matched=False)
        for condition in self.conditions:
            if not self._handlers[condition.kind](condition, message, result):
                logger.debug("%s failed condition %s", message, condition.kind.value)
                return result
        result.matched = True
        return result

    @staticmethod
    def _merge_captures(match: re.Match[str], result: MatchResult) -> None:
        result.captures.update(match.groupdict())

    def _match_subject(self, condition: Condition, message: MailMessage, result: MatchResult) -> bool:
        match = condition.regex.search(message.subject)
        if match is None:
            return False
        self._merge_captures(match, result)
        return True

    def _match_body(self, condition: Condition, message: MailMessage, result: MatchResult) -> bool:
        for part in message.body_parts(self.mime_types):
            match = condition.regex.search(part.text)
            if match is not None:
                self._merge_captures(match, result)
                result.body_part = part
                return True
        return False

    def _match_addresses(self, condition: Condition, message: MailMessage, result: MatchResult) -> bool:
        header = ADDRESS_HEADERS[condition.kind]
        try:
            addresses = self._extract_addresses(message, header)
        except EvaluationError as exc:
            logger.warning("%s: %s", message, exc)
            return False
        if addresses is None:
            return False
        return any(glob.match(address) for address in addresses for glob in condition.globs)

    @staticmethod
    def _extract_addresses(message: MailMessage, header: str) -> Optional[list[str]]:
        try:
            return message.addresses(header)
        except (TypeError, ValueError, IndexError, AttributeError) as exc:
            raise EvaluationError(f"unparseable {header} header: {exc}") from exc

    def _match_has_attachment(self, condition: Condition, message: MailMessage, result: MatchResult) -> bool:
        return message.has_attachment() == condition.flag

    def _match_is_unread(self, condition: Condition, message: MailMessage, result: MatchResult) -> bool:
        # Read state is enforced while scanning, before the mail is even fetched.
        return True
