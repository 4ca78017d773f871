"""Conversion of Slack mrkdwn to canonical Markdown text.

Slack encodes mentions and links in angle brackets (`<@U123|name>`, `<#C123|general>`,
`<https://x.y|label>`) and uses single-character emphasis (`*bold*`, `~strike~`). The canonical
form is plain Markdown with readable mentions. Code spans and fenced blocks are copied verbatim.
HTML entities (`&amp;`, `&lt;`, `&gt;`) stay encoded, so converted text never contains bracket
markup and converting it again leaves it unchanged.
"""

import re
from collections.abc import Mapping

# Fenced blocks first so their backticks are not read as inline spans
CODE_SEGMENT_PATTERN = re.compile(r"(```.*?```|`[^`\n]+`)", re.DOTALL)

USER_MENTION_PATTERN = re.compile(r"<@([UWB][A-Z0-9]+)(?:\|([^>]*))?>")
CHANNEL_MENTION_PATTERN = re.compile(r"<#([CGD][A-Z0-9]+)(?:\|([^>]*))?>")
SPECIAL_MENTION_PATTERN = re.compile(r"<!(here|channel|everyone)(?:\|[^>]*)?>")
SUBTEAM_MENTION_PATTERN = re.compile(r"<!subteam\^([A-Z0-9]+)(?:\|([^>]*))?>")
DATE_PATTERN = re.compile(r"<!date\^[^|>]*\|([^>]*)>")
LINK_PATTERN = re.compile(r"<((?:https?|mailto|tel|ftp):[^|>\s]+)(?:\|([^>]*))?>")

BOLD_PATTERN = re.compile(r"(?<![*\w])\*(?![*\s])([^*\n]+?)(?<![*\s])\*(?![*\w])")
STRIKE_PATTERN = re.compile(r"(?<![~\w])~(?![~\s])([^~\n]+?)(?<![~\s])~(?![~\w])")

# URLs in converted text, including the target of `[label](url)`; emphasis never applies inside them
URL_PATTERN = re.compile(r"(?:https?|mailto|tel|ftp):[^\s<>()]+")
URL_PLACEHOLDER_PATTERN = re.compile(r"\x00(\d+)\x00")


def split_code_segments(text: str) -> list[tuple[str, bool]]:
    """Split text into (segment, is_code) pairs, preserving order."""
    segments: list[tuple[str, bool]] = []
    position = 0
    for match in CODE_SEGMENT_PATTERN.finditer(text):
        if match.start() > position:
            segments.append((text[position : match.start()], False))
        segments.append((match.group(0), True))
        position = match.end()
    if position < len(text):
        segments.append((text[position:], False))
    return segments


def _format_fence(block: str) -> str:
    inner = block[3:-3].strip("\n")
    return f"```\n{inner}\n```"


def _convert_plain(
    text: str, user_names: Mapping[str, str], channel_names: Mapping[str, str]
) -> str:
    def _user(match: re.Match[str]) -> str:
        user_id, label = match.group(1), match.group(2)
        name = user_names.get(user_id) or (label or "").lstrip("@") or user_id
        return f"@{name}"

    def _channel(match: re.Match[str]) -> str:
        channel_id, label = match.group(1), match.group(2)
        name = channel_names.get(channel_id) or (label or "").lstrip("#") or channel_id
        return f"#{name}"

    def _subteam(match: re.Match[str]) -> str:
        return f"@{(match.group(2) or '').lstrip('@') or match.group(1)}"

    def _link(match: re.Match[str]) -> str:
        url, label = match.group(1), match.group(2)
        if not label or label == url:
            return url
        return f"[{label}]({url})"

    text = USER_MENTION_PATTERN.sub(_user, text)
    text = CHANNEL_MENTION_PATTERN.sub(_channel, text)
    text = SPECIAL_MENTION_PATTERN.sub(lambda m: f"@{m.group(1)}", text)
    text = SUBTEAM_MENTION_PATTERN.sub(_subteam, text)
    text = DATE_PATTERN.sub(lambda m: m.group(1), text)
    text = LINK_PATTERN.sub(_link, text)

    urls: list[str] = []

    def _stash(match: re.Match[str]) -> str:
        urls.append(match.group(0))
        return f"\x00{len(urls) - 1}\x00"

    def _restore(match: re.Match[str]) -> str:
        index = int(match.group(1))
        return urls[index] if index < len(urls) else match.group(0)

    text = URL_PATTERN.sub(_stash, text)
    text = BOLD_PATTERN.sub(r"**\1**", text)
    text = STRIKE_PATTERN.sub(r"~~\1~~", text)
    return URL_PLACEHOLDER_PATTERN.sub(_restore, text)


def convert_mrkdwn(
    text: str,
    user_names: Mapping[str, str] | None = None,
    channel_names: Mapping[str, str] | None = None,
) -> str:
    """Convert Slack mrkdwn to canonical Markdown.

    Args:
        text: Raw message text from a Slack event
        user_names: Display names by user id; ids missing here fall back to the inline label
            and then to the raw id
        channel_names: Channel names by channel id, with the same fallbacks

    Returns:
        Canonical text. Converting canonical text again returns it unchanged.
    """
    if not text:
        return ""

    users = user_names or {}
    channels = channel_names or {}
    parts: list[str] = []
    after_fence = False
    for segment, is_code in split_code_segments(text):
        if is_code and segment.startswith("```"):
            # Fenced blocks sit on their own lines
            if parts and not parts[-1].endswith("\n"):
                parts.append("\n")
            parts.append(_format_fence(segment))
            after_fence = True
            continue

        if after_fence and not segment.startswith("\n"):
            parts.append("\n")
        after_fence = False
        parts.append(segment if is_code else _convert_plain(segment, users, channels))
    return "".join(parts)


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def extract_mentions(text: str) -> tuple[list[str], list[str]]:
    """User ids and channel ids mentioned outside code, in order of first appearance."""
    user_ids: list[str] = []
    channel_ids: list[str] = []
    for segment, is_code in split_code_segments(text or ""):
        if is_code:
            continue
        user_ids.extend(m.group(1) for m in USER_MENTION_PATTERN.finditer(segment))
        channel_ids.extend(m.group(1) for m in CHANNEL_MENTION_PATTERN.finditer(segment))
    return _unique(user_ids), _unique(channel_ids)
