"""Tests for package exports."""

import fleetsync


def test_public_api_available() -> None:
    """Test that the documented names are importable from the package root."""
    from fleetsync import (
        InvalidationManager,
        MutationExecutor,
        QueryCache,
        QueryExecutor,
        RealtimeBridge,
        Resource,
        SyncClient,
        SyncConfig,
    )

    assert SyncClient is not None
    assert QueryCache is not None
    assert QueryExecutor is not None
    assert MutationExecutor is not None
    assert RealtimeBridge is not None
    assert InvalidationManager is not None
    assert Resource is not None
    assert SyncConfig is not None


def test_all_names_resolve() -> None:
    """Test that every name in __all__ exists, optional adapters aside."""
    optional = {"RedisChangeFeed"}
    missing = [n for n in fleetsync.__all__ if n not in optional and not hasattr(fleetsync, n)]
    assert missing == []


def test_version() -> None:
    """Test that the package exposes a version string."""
    assert fleetsync.__version__ == "0.1.0"
