"""Tests for package metadata, exports and the CLI entry point."""

import tomllib
from pathlib import Path

import pytest

import balance_sync
from balance_sync import cache, explorer, storage
from balance_sync.__main__ import main
from balance_sync.errors import BalanceSyncError

PYPROJECT = Path(__file__).resolve().parents[1] / "pyproject.toml"


def test_version_matches_pyproject() -> None:
    project = tomllib.loads(PYPROJECT.read_text())["project"]
    assert balance_sync.__version__ == project["version"]


def test_console_script_points_at_main() -> None:
    scripts = tomllib.loads(PYPROJECT.read_text())["project"]["scripts"]
    assert scripts["balance-sync"] == "balance_sync.__main__:main"
    assert callable(main)


@pytest.mark.parametrize("package", [cache, explorer, storage])
def test_exports_resolve(package: object) -> None:
    for name in package.__all__:  # type: ignore[attr-defined]
        assert getattr(package, name) is not None


@pytest.mark.parametrize(
    "error",
    [
        storage.StoreError,
        explorer.ExplorerError,
        explorer.UpstreamUnavailableError,
        explorer.MalformedUpstreamDataError,
    ],
)
def test_errors_share_package_base(error: type[Exception]) -> None:
    assert issubclass(error, BalanceSyncError)


def test_invalid_address_is_value_error() -> None:
    assert issubclass(explorer.InvalidAddressError, ValueError)
