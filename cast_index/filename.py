"""Recording filename convention.

Recordings are named by the recording workflow as
``asciinema_YYYY-MM-DD_HH-MM-SS[_tags_tag1-tag2].cast`` and may later be
compressed to ``<name>.cast.gz``. Date, time and tags are derived from the
name once, at indexing time.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

_FILENAME_RE = re.compile(
    r"asciinema_(\d{4}-\d{2}-\d{2})_(\d{2}-\d{2}-\d{2})(?:_tags_([^.]+))?\.cast"
)

GZIP_SUFFIX = ".gz"
TAG_SEPARATOR = ", "


@dataclass
class CastName:
    """Metadata encoded in a recording filename."""

    filename: str
    date: str
    time: str
    started_at: datetime
    tags: list[str] = field(default_factory=list)

    @property
    def timestamp(self) -> int:
        """Recording start as epoch milliseconds."""
        return int(self.started_at.timestamp() * 1000)

    @property
    def tags_string(self) -> str:
        return TAG_SEPARATOR.join(self.tags)


def logical_filename(name: str) -> str:
    """Return the filename without a compression suffix."""
    if name.endswith(GZIP_SUFFIX):
        return name[: -len(GZIP_SUFFIX)]
    return name


def split_tags(tags_string: str | None) -> list[str]:
    """Split a stored tag string back into a list."""
    if not tags_string:
        return []
    return [tag.strip() for tag in tags_string.split(",") if tag.strip()]


def parse_cast_filename(filename: str) -> CastName | None:
    """Parse a recording filename.

    Examples:
        asciinema_2025-04-04_13-56-53.cast
        asciinema_2025-04-04_13-56-53_tags_work-demo.cast.gz

    Args:
        filename: Bare filename, with or without the ``.gz`` suffix.

    Returns:
        CastName if the name follows the convention, None otherwise.
    """
    logical = logical_filename(filename)
    match = _FILENAME_RE.fullmatch(logical)
    if not match:
        return None

    date_part, time_part, tags_part = match.groups()
    time_str = time_part.replace("-", ":")
    try:
        started_at = datetime.fromisoformat(f"{date_part}T{time_str}").replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        # Matches the pattern but is not a real date (e.g. month 13)
        return None

    tags = [t.strip() for t in tags_part.split("-")] if tags_part else []
    return CastName(
        filename=logical,
        date=date_part,
        time=time_str,
        started_at=started_at,
        tags=[t for t in tags if t],
    )
