"""Content extraction from asciicast recordings.

A recording is a line-delimited JSON stream: a header object followed by
``[time_offset, channel, payload]`` event records. Compressed recordings are
gunzipped in memory before parsing. Payloads are stripped of terminal control
sequences before they become searchable fragments.
"""

from __future__ import annotations

import gzip
import json
import logging
import math
import re
from collections.abc import Iterable, Iterator
from pathlib import Path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Control sequence stripping
# ---------------------------------------------------------------------------

# Applied in order. OSC must run before the single-character escape rule,
# since "ESC ]" is itself a valid two-byte escape.
_STRIP_PATTERNS: tuple[re.Pattern[str], ...] = (
    # CSI: ESC [ params intermediates final
    re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]"),
    # OSC terminated by BEL or ST (ESC \)
    re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)", re.DOTALL),
    # Charset designation and other short private sequences
    re.compile(r"\x1b[()#;?]*(?:[0-9]{1,4}(?:;[0-9]{0,4})*)?[0-9A-ORZcf-nqry=><]"),
    # Single-character escapes (Fe)
    re.compile(r"\x1b[@-Z\\-_]"),
    # Remaining C0/C1 control bytes, keeping tab and newline
    re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]"),
)


def strip_control_sequences(text: str) -> str:
    """Remove terminal control sequences from a payload.

    Args:
        text: Raw event payload.

    Returns:
        The payload with CSI/OSC/escape sequences, control bytes and
        carriage returns removed.
    """
    if not text:
        return ""
    for pattern in _STRIP_PATTERNS:
        text = pattern.sub("", text)
    return text.replace("\r", "")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def parse_cast_lines(content: str) -> list:
    """Parse line-delimited JSON, skipping lines that fail to decode."""
    events: list = []
    skipped = 0
    for line in content.split("\n"):
        line = line.strip()
        if not line:
            continue
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError:
            skipped += 1
    if skipped:
        logger.debug(f"Skipped {skipped} undecodable lines")
    return events


def load_cast_events(path: Path, compressed: bool) -> list:
    """Load every record of a recording.

    The header (if present) is element 0. I/O and decompression errors
    propagate to the caller; malformed lines do not.

    Args:
        path: Path to the ``.cast`` or ``.cast.gz`` file.
        compressed: Whether the file is gzip-compressed.

    Returns:
        List of decoded records in file order.
    """
    data = Path(path).read_bytes()
    if compressed:
        data = gzip.decompress(data)
    return parse_cast_lines(data.decode("utf-8", errors="replace"))


# ---------------------------------------------------------------------------
# Fragment extraction
# ---------------------------------------------------------------------------


def _is_offset(value) -> bool:
    # json.loads accepts NaN and Infinity
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def iter_fragments(
    events: list,
    channels: Iterable[str] | None = None,
) -> Iterator[tuple[float, str]]:
    """Yield ``(time_offset, text)`` for every indexable event.

    The header record at index 0 is metadata and never yields a fragment.
    Records that are not ``[number, channel, payload]`` are skipped, as are
    payloads that are empty before or after stripping.

    Args:
        events: Records as returned by load_cast_events.
        channels: Event channels to keep ("o", "i"). None keeps all.
    """
    allowed = frozenset(channels) if channels is not None else None

    for event in events[1:]:
        if not isinstance(event, list) or len(event) < 3:
            continue

        offset, channel, payload = event[0], event[1], event[2]
        if not _is_offset(offset):
            continue
        if allowed is not None and channel not in allowed:
            continue
        if not isinstance(payload, str) or not payload:
            continue

        text = strip_control_sequences(payload)
        if not text.strip():
            continue

        yield float(offset), text


def read_cast_duration(events: list) -> float | None:
    """Determine a recording's duration in seconds.

    Uses the v2 header ``duration`` when present, otherwise the offset of the
    last event.
    """
    if not events:
        return None

    header = events[0]
    if isinstance(header, dict) and header.get("duration"):
        try:
            duration = float(header["duration"])
        except (TypeError, ValueError):
            duration = None
        if duration is not None and math.isfinite(duration):
            return duration

    last = 0.0
    for event in events[1:]:
        if isinstance(event, list) and event and _is_offset(event[0]):
            last = max(last, float(event[0]))
    return last if last > 0 else None
