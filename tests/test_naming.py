import re
from datetime import datetime

import pytest

import naming

PATH_RE = re.compile(r"^\d{8}/\d{8}-\d{9}-[0-9a-f]{32}\.jpg$")


def test_path_layout():
    now = datetime(2024, 1, 2, 3, 4, 5, 678000).timestamp()
    path = naming.generate_path("photo.jpg", now)

    assert PATH_RE.match(path)
    assert path.startswith("20240102/20240102-030405678-")
    assert naming.date_from_path(path) == "20240102"


def test_paths_are_unique_within_the_same_millisecond():
    now = 1_700_000_000.123
    paths = {naming.generate_path("photo.jpg", now) for _ in range(10_000)}
    assert len(paths) == 10_000


@pytest.mark.parametrize("name, ext", [
    ("PHOTO.JPG", ".jpg"),
    ("archive.tar.gz", ".gz"),
    ("README", ".bin"),
    (".bashrc", ".bin"),
    ("dir\\clip.MP4", ".mp4"),
])
def test_extension(name, ext):
    assert naming.extension(name) == ext
    assert naming.generate_path(name).endswith(ext)


def test_degraded_random_source_still_produces_a_valid_path(monkeypatch, logs):
    def broken(n):
        raise NotImplementedError("no entropy")

    monkeypatch.setattr(naming.secrets, "token_bytes", broken)
    path = naming.generate_path("photo.jpg", 1_700_000_000.0)

    assert PATH_RE.match(path)
    assert any("degraded" in m for m in logs)


def test_storage_path_stays_inside_root(tmp_path):
    full = naming.storage_path(tmp_path, "20240102/a.jpg")
    assert full == (tmp_path / "20240102" / "a.jpg").resolve()

    with pytest.raises(ValueError):
        naming.storage_path(tmp_path, "../outside.jpg")
    with pytest.raises(ValueError):
        naming.storage_path(tmp_path, "20240102/../../outside.jpg")
