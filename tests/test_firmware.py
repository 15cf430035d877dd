"""Tests for firmware image lookup."""

import hashlib
import logging

import pytest

from lsr_updater.core.firmware import (
    FirmwareImage,
    FirmwareRepository,
    extract_date_version,
    file_md5,
)


def make_image(directory, name, content=b"\x55" * 100):
    path = directory / name
    path.write_bytes(content)
    return path


@pytest.mark.parametrize(
    "name, expected",
    [
        ("lsr4-20221202.bin", "2022-12-02"),
        ("/srv/fw/lsr4-20230315.bin", "2023-03-15"),
        ("lsr4.bin", ""),
        ("20221202.bin", ""),
    ],
)
def test_extract_date_version(name, expected):
    assert extract_date_version(name) == expected


def test_image_metadata(firmware_file):
    image = FirmwareImage.from_path(firmware_file)

    assert image.name == "lsr4-20221202.bin"
    assert image.size == 1300
    assert image.version == "2022-12-02"
    assert image.md5 == hashlib.md5(b"\xAA" * 1300).hexdigest()
    assert "Version: 2022-12-02" in str(image)


def test_image_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        FirmwareImage.from_path(tmp_path / "lsr4-20221202.bin")


def test_file_md5_chunks(tmp_path):
    path = make_image(tmp_path, "big.bin", bytes(range(256)) * 1000)
    assert file_md5(path, chunk_size=1000) == hashlib.md5(bytes(range(256)) * 1000).hexdigest()


class TestRepository:
    def test_resolve_bare_name_under_root(self, tmp_path):
        make_image(tmp_path, "lsr4-20221202.bin")
        path, size = FirmwareRepository(tmp_path).resolve("lsr4-20221202.bin")
        assert path == (tmp_path / "lsr4-20221202.bin").resolve()
        assert size == 100

    def test_resolve_explicit_path(self, tmp_path):
        other = tmp_path / "elsewhere"
        other.mkdir()
        explicit = make_image(other, "custom.bin", b"abc")
        path, size = FirmwareRepository(tmp_path / "repo").resolve(explicit)
        assert path == explicit.resolve()
        assert size == 3

    def test_resolve_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="searched"):
            FirmwareRepository(tmp_path).resolve("lsr4-20990101.bin")

    def test_list_and_latest(self, tmp_path):
        make_image(tmp_path, "lsr4-20221202.bin")
        make_image(tmp_path, "lsr4-20230315.bin")
        make_image(tmp_path, "custom.bin")
        make_image(tmp_path, "notes.txt")
        repo = FirmwareRepository(tmp_path)

        assert [img.name for img in repo.list_images()] == [
            "custom.bin",
            "lsr4-20221202.bin",
            "lsr4-20230315.bin",
        ]
        assert repo.latest().version == "2023-03-15"

    def test_missing_root_is_empty(self, tmp_path, caplog):
        repo = FirmwareRepository(tmp_path / "absent")
        with caplog.at_level(logging.WARNING):
            assert repo.list_images() == []
        assert repo.latest() is None
        assert "does not exist" in caplog.text

    def test_verify(self, tmp_path):
        make_image(tmp_path, "lsr4-20221202.bin", b"payload")
        repo = FirmwareRepository(tmp_path)
        digest = hashlib.md5(b"payload").hexdigest()
        assert repo.verify("lsr4-20221202.bin", digest.upper()) is True
        assert repo.verify("lsr4-20221202.bin", "0" * 32) is False
