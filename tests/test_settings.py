from __future__ import annotations

import pytest

from config.settings import DEFAULT_DOWNLOAD_CONCURRENCY, Settings, load_settings, validate_settings


def test_load_settings_defaults() -> None:
    settings = load_settings({})
    assert settings.download_concurrency == DEFAULT_DOWNLOAD_CONCURRENCY
    assert settings.kill_grace_seconds == 5.0
    assert settings.ytdlp_bin == "yt-dlp"
    assert settings.ytdlp_extra_args == ()
    assert validate_settings(settings) == []


def test_load_settings_reads_environment() -> None:
    settings = load_settings(
        {
            "MEDIAFLOW_DOWNLOAD_CONCURRENCY": "4",
            "MEDIAFLOW_KILL_GRACE_SECONDS": "2.5",
            "MEDIAFLOW_ENRICH_METADATA": "off",
            "MEDIAFLOW_YTDLP_EXTRA_ARGS": "--cookies '/data/cookies jar.txt'",
        }
    )
    assert settings.download_concurrency == 4
    assert settings.kill_grace_seconds == 2.5
    assert settings.enrich_metadata is False
    assert settings.ytdlp_extra_args == ("--cookies", "/data/cookies jar.txt")


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("MEDIAFLOW_CONVERT_CONCURRENCY", "two"),
        ("MEDIAFLOW_CANCEL_POLL_SECONDS", "fast"),
        ("MEDIAFLOW_ENRICH_METADATA", "maybe"),
    ],
)
def test_load_settings_rejects_malformed_values(key: str, value: str) -> None:
    with pytest.raises(ValueError) as excinfo:
        load_settings({key: value})
    assert key in str(excinfo.value)


def test_validate_settings_reports_each_problem() -> None:
    errors = validate_settings(Settings(download_concurrency=0, cancel_poll_seconds=0, ffmpeg_bin=""))
    assert "download_concurrency must be at least 1" in errors
    assert "cancel_poll_seconds must be positive" in errors
    assert "ffmpeg_bin is required" in errors
    assert len(errors) == 3
