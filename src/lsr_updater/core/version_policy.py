"""
"Needs update" decisions.

Readers report their firmware version as free text. Whether a reader is
already current is decided by a pluggable policy:

- DateCodeVersionPolicy: compare the reader's date code with the image's
- PrefixVersionPolicy: current when the version starts with a known prefix
- AlwaysUpdatePolicy: every reader with a known version is updated
"""

import re
from typing import Optional, Protocol

from lsr_updater.core.firmware import FirmwareImage

_DATE_CODE = re.compile(r"(?<!\d)(\d{4})-?(\d{2})-?(\d{2})(?!\d)")


def extract_date_code(version: str) -> str:
    """
    Find a date code ("2022-12-02" or "20221202") in a version string.

    Returns:
        Normalized "YYYY-MM-DD", or "" when none is present
    """
    if not version:
        return ""
    match = _DATE_CODE.search(version)
    if not match:
        return ""
    year, month, day = match.groups()
    if not (1 <= int(month) <= 12 and 1 <= int(day) <= 31):
        return ""
    return f"{year}-{month}-{day}"


class VersionPolicy(Protocol):
    """Decides whether a reader running ``device_version`` should get ``image``."""

    name: str

    def needs_update(self, device_version: str, image: Optional[FirmwareImage]) -> bool:
        ...


class DateCodeVersionPolicy:
    """
    Update unless the reader's date code equals the image's.

    An image without a date code cannot be compared, so every reader is updated.
    """

    name = "date-code"

    def needs_update(self, device_version: str, image: Optional[FirmwareImage]) -> bool:
        target = image.version if image else ""
        if not target:
            return True
        return extract_date_code(device_version) != target


class PrefixVersionPolicy:
    """Readers whose version starts with ``prefix`` are considered current."""

    name = "prefix"

    def __init__(self, prefix: str):
        if not prefix:
            raise ValueError("prefix must not be empty")
        self.prefix = prefix

    def needs_update(self, device_version: str, image: Optional[FirmwareImage]) -> bool:
        return not device_version.strip().startswith(self.prefix)


class AlwaysUpdatePolicy:
    name = "always"

    def needs_update(self, device_version: str, image: Optional[FirmwareImage]) -> bool:
        return True
