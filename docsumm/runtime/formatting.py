from __future__ import annotations

import re

TLDR_HEADER = "TL;DR"
FULL_SUMMARY_HEADER = "Full Summary"
PLACEHOLDER_BULLET = "- (no additional key point)"

_FENCE_OPEN = re.compile(r"^```[\w-]*\s*$")
_HEADING = re.compile(r"^\s*#{1,6}\s+")
_EMPHASIS = re.compile(r"\*{1,3}([^*\n]+)\*{1,3}")
_TLDR_WITH_COLON = re.compile(r"^\s*(TL;DR)\s*:\s*$", re.IGNORECASE)
_FULL_WITH_COLON = re.compile(r"^\s*(Full Summary)\s*:\s*$", re.IGNORECASE)
_LIST_MARKER = re.compile(r"^(\s*)(?:\*|\d+[.)])\s+")

_TLDR_LINE = re.compile(r"^[ \t]*TL;DR[ \t]*$", re.IGNORECASE | re.MULTILINE)
_FULL_LINE = re.compile(r"^[ \t]*Full Summary[ \t]*$", re.IGNORECASE | re.MULTILINE)
_BULLET_LINE = re.compile(r"^[ \t]*[-•][ \t]+\S", re.MULTILINE)


def _clean_line(line: str) -> str:
    line = _HEADING.sub("", line)
    # the marker goes first so a leading "* **" is not read as emphasis
    prefix = ""
    marker = _LIST_MARKER.match(line)
    if marker:
        prefix = f"{marker.group(1)}- "
        line = line[marker.end():]
    line = _EMPHASIS.sub(r"\1", line)
    line = _TLDR_WITH_COLON.sub(r"\1", line)
    line = _FULL_WITH_COLON.sub(r"\1", line)
    return prefix + line


def normalize_summary(raw: str) -> str:
    """Strip markdown decoration and rewrite list markers to ``- ``."""
    lines = []
    for line in (raw or "").replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if _FENCE_OPEN.match(line.strip()):
            continue
        lines.append(_clean_line(line).rstrip())
    return "\n".join(lines).strip()


def count_bullets(text: str) -> int:
    return len(_BULLET_LINE.findall(text))


def validate_format(text: str) -> bool:
    return bool(_TLDR_LINE.search(text)) and bool(_FULL_LINE.search(text)) and count_bullets(text) >= 3
