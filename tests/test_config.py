"""Tests for SyncConfig."""

from datetime import timedelta

import pytest

from fleetsync import QueryOptions, SyncConfig


class TestSyncConfig:
    """Tests for SyncConfig."""

    def test_defaults_in_milliseconds(self) -> None:
        """Test that default durations are normalized to milliseconds."""
        config = SyncConfig()
        assert config.stale_after == 300_000
        assert config.gc_after == 1_800_000
        assert config.retries == 1
        assert config.retry_base_delay == 1_000
        assert config.retry_max_delay == 30_000
        assert config.mutation_retries == 1
        assert config.gc_interval == 60_000
        assert config.recent_update_window == 30_000
        assert config.refetch_on_reconnect is True
        assert config.refetch_on_revisit is False

    def test_accepts_duration_forms(self) -> None:
        """Test that durations accept strings, ints and timedeltas."""
        config = SyncConfig(stale_after=timedelta(seconds=10), gc_after=500, gc_interval="1m30s")
        assert config.stale_after == 10_000
        assert config.gc_after == 500
        assert config.gc_interval == 90_000

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"stale_after": "soon"},
            {"retries": -1},
            {"mutation_retries": -1},
            {"gc_interval": 0},
        ],
    )
    def test_rejects_bad_values(self, kwargs: dict) -> None:
        """Test that invalid settings raise ValueError."""
        with pytest.raises(ValueError):
            SyncConfig(**kwargs)

    def test_default_options(self) -> None:
        """Test that default query options mirror the config."""
        options = SyncConfig(stale_after="1m", retries=3).default_options()
        assert isinstance(options, QueryOptions)
        assert options.stale_after == 60_000
        assert options.retries == 3
        assert options.schema is None

    def test_is_frozen(self) -> None:
        """Test that the config cannot be mutated."""
        config = SyncConfig()
        with pytest.raises(AttributeError):
            config.retries = 5  # type: ignore[misc]


class TestFromEnv:
    """Tests for SyncConfig.from_env."""

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that from_env reads FLEETSYNC_ variables."""
        monkeypatch.setenv("FLEETSYNC_STALE_AFTER", "2m")
        monkeypatch.setenv("FLEETSYNC_GC_INTERVAL", "5000")
        monkeypatch.setenv("FLEETSYNC_RETRIES", "4")
        monkeypatch.setenv("FLEETSYNC_REFETCH_ON_REVISIT", "yes")
        monkeypatch.setenv("FLEETSYNC_REFETCH_ON_RECONNECT", "off")

        config = SyncConfig.from_env()

        assert config.stale_after == 120_000
        assert config.gc_interval == 5_000
        assert config.retries == 4
        assert config.refetch_on_revisit is True
        assert config.refetch_on_reconnect is False

    def test_overrides_win(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that explicit overrides beat the environment."""
        monkeypatch.setenv("FLEETSYNC_RETRIES", "4")
        assert SyncConfig.from_env(retries=0).retries == 0

    def test_unset_environment_gives_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that from_env without variables gives defaults."""
        for name in ("STALE_AFTER", "RETRIES", "REFETCH_ON_REVISIT"):
            monkeypatch.delenv(f"FLEETSYNC_{name}", raising=False)
        assert SyncConfig.from_env() == SyncConfig()
