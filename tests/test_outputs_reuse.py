from __future__ import annotations

import os
import zipfile

from engine.outputs import (
    cleanup_temp_files,
    download_url,
    find_existing_output,
    item_output_id,
    make_zip,
    reuse_result,
    stream_output_id,
)


def _touch(path, data: bytes = b"data") -> str:
    with open(path, "wb") as handle:
        handle.write(data)
    return str(path)


def test_output_ids_for_items_and_streams() -> None:
    assert item_output_id("job", 0) == "job_0"
    assert stream_output_id("job", 2) == "job_a2"
    assert download_url("/srv/out/job_0.mp3") == "/download/job_0.mp3"


def test_find_existing_output_matches_prefix_and_extension(tmp_path) -> None:
    _touch(tmp_path / "job_1.mp3")
    _touch(tmp_path / "job_10.mp3")
    _touch(tmp_path / "job_2.flac")
    assert find_existing_output("job_1", "mp3", str(tmp_path)) == str(tmp_path / "job_1.mp3")
    assert find_existing_output("job_2", "mp3", str(tmp_path)) is None
    assert find_existing_output("job_3", "mp3", str(tmp_path)) is None


def test_find_existing_output_accepts_alternate_extensions(tmp_path) -> None:
    _touch(tmp_path / "job.m4a")
    _touch(tmp_path / "other.oga")
    assert find_existing_output("job", "mp4", str(tmp_path)) == str(tmp_path / "job.m4a")
    assert find_existing_output("other", "ogg", str(tmp_path)) == str(tmp_path / "other.oga")


def test_find_existing_output_ignores_empty_files(tmp_path) -> None:
    _touch(tmp_path / "job_0.mp3", b"")
    assert find_existing_output("job_0", "mp3", str(tmp_path)) is None


def test_reuse_result_reports_size(tmp_path) -> None:
    _touch(tmp_path / "job_0.mp3", b"12345")
    result = reuse_result("job_0", "mp3", str(tmp_path))
    assert result is not None
    assert result.reused is True
    assert result.file_size == 5
    assert result.download_url == "/download/job_0.mp3"
    assert reuse_result("missing", "mp3", str(tmp_path)) is None


def test_make_zip_packs_outputs(tmp_path) -> None:
    first = _touch(tmp_path / "job_0.mp3")
    second = _touch(tmp_path / "job_1.mp3")
    zip_path = make_zip("job", [first, second, str(tmp_path / "gone.mp3")], str(tmp_path))
    assert zip_path == str(tmp_path / "job.zip")
    with zipfile.ZipFile(zip_path) as archive:
        assert sorted(archive.namelist()) == ["job_0.mp3", "job_1.mp3"]
    assert not os.path.exists(zip_path + ".part")
    assert make_zip("job", [], str(tmp_path)) is None


def test_cleanup_temp_files_removes_job_entries_only(tmp_path) -> None:
    (tmp_path / "job").mkdir()
    _touch(tmp_path / "job" / "01 - a.webm")
    _touch(tmp_path / "job - title.webm")
    _touch(tmp_path / "job.urls.txt")
    _touch(tmp_path / "other - title.webm")
    assert cleanup_temp_files("job", str(tmp_path)) == 3
    assert sorted(os.listdir(tmp_path)) == ["other - title.webm"]
