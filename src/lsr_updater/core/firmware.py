"""
Local firmware image lookup.

Firmware files live in a flat directory (default ``~/firmware/lsr4``) and
carry their build date in the name: ``lsr4-20221202.bin`` is version
``2022-12-02``.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

FIRMWARE_SUFFIX = ".bin"

_DATE_CODE = re.compile(r"-(\d{4})(\d{2})(\d{2})")


def extract_date_version(name: str) -> str:
    """
    Extract the date-coded version from a firmware file name.

    Returns:
        "YYYY-MM-DD", or "" when the name carries no date code
    """
    stem = Path(name).stem
    match = _DATE_CODE.search(stem)
    if not match:
        return ""
    return "-".join(match.groups())


def file_md5(path: Union[str, Path], chunk_size: int = 65536) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class FirmwareImage:
    """
    Firmware file metadata.

    Attributes:
        path: Absolute path to the image
        name: File name sent as the TFTP remote name
        size: Size in bytes
        version: Date-coded version ("2022-12-02") or ""
        md5: Hex MD5 digest of the file contents
    """
    path: Path
    name: str
    size: int
    version: str
    md5: str

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "FirmwareImage":
        """
        Raises:
            FileNotFoundError: If the file does not exist
        """
        p = Path(path).expanduser().resolve()
        if not p.is_file():
            raise FileNotFoundError(f"Firmware file not found: {path}")
        return cls(
            path=p,
            name=p.name,
            size=p.stat().st_size,
            version=extract_date_version(p.name),
            md5=file_md5(p),
        )

    @property
    def size_mb(self) -> float:
        return self.size / (1024 * 1024)

    def __str__(self) -> str:
        version = self.version or "unknown"
        return f"{self.name} ({self.size_mb:.2f} MB) - Version: {version}"


class FirmwareRepository:
    """Resolves firmware names to readable local files."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()

    def resolve(self, name: Union[str, Path]) -> Tuple[Path, int]:
        """
        Resolve a firmware name to ``(path, size)``.

        Paths containing a directory part (or absolute paths) are used as-is;
        bare names are looked up under the repository root.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        candidate = Path(name).expanduser()
        if not candidate.is_absolute() and candidate.parent == Path("."):
            local = self.root / candidate
            if local.is_file() or not candidate.is_file():
                candidate = local
        if not candidate.is_file():
            raise FileNotFoundError(f"Firmware file not found: {name} (searched {self.root})")
        path = candidate.resolve()
        return path, path.stat().st_size

    def image(self, name: Union[str, Path]) -> FirmwareImage:
        path, _ = self.resolve(name)
        return FirmwareImage.from_path(path)

    def list_images(self) -> List[FirmwareImage]:
        """All ``*.bin`` images under the root, sorted by name. Missing root yields []."""
        if not self.root.is_dir():
            logger.warning(f"Firmware directory does not exist: {self.root}")
            return []
        return [
            FirmwareImage.from_path(p)
            for p in sorted(self.root.glob(f"*{FIRMWARE_SUFFIX}"))
            if p.is_file()
        ]

    def latest(self) -> Optional[FirmwareImage]:
        """Image with the highest date-coded version, or None."""
        dated = [img for img in self.list_images() if img.version]
        if not dated:
            return None
        return max(dated, key=lambda img: img.version)

    def verify(self, name: Union[str, Path], expected_md5: str) -> bool:
        """Compare the file's MD5 with ``expected_md5`` (case-insensitive)."""
        path, _ = self.resolve(name)
        actual = file_md5(path)
        ok = actual.lower() == expected_md5.strip().lower()
        if not ok:
            logger.warning(f"MD5 mismatch for {path.name}: expected {expected_md5}, got {actual}")
        return ok
