"""Shared fixtures for envshield tests."""

import pytest


@pytest.fixture(autouse=True)
def isolated_global_config(monkeypatch, tmp_path_factory):
    """Never read the developer's real global config during tests."""
    config_dir = tmp_path_factory.mktemp("global-config")
    monkeypatch.setenv("ENVSHIELD_CONFIG", str(config_dir / "config.yaml"))
    return config_dir / "config.yaml"


@pytest.fixture
def project(tmp_path):
    """A project directory with two layered secrets files."""
    (tmp_path / ".env").write_text(
        "API_KEY=sk_live_abc123\nDB_PASS=supersecret\nSHARED=from-env\n"
    )
    (tmp_path / ".env.local").write_text("SHARED=from-local\nLOCAL_ONLY=local-value\n")
    return tmp_path
