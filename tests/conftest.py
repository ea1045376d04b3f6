"""Shared test fixtures for the OMCM test suite."""

import pytest

from omcm.config import OmcmPaths
from omcm.session import SessionContext


@pytest.fixture(autouse=True)
def _no_session_env(monkeypatch):
    """Keep the developer's own session id out of tests."""
    monkeypatch.delenv("OMCM_SESSION_ID", raising=False)


@pytest.fixture
def paths(tmp_path):
    """Provide an OMCM path set rooted in a temporary directory."""
    return OmcmPaths.under(tmp_path)


@pytest.fixture
def session(paths):
    """Provide an active session context."""
    return SessionContext(session_id="20260101_120000_abc123", paths=paths)


@pytest.fixture
def global_session(paths):
    """Provide a context with no session (global state only)."""
    return SessionContext(session_id=None, paths=paths)


@pytest.fixture
def project_dir(tmp_path):
    """Provide a temporary project directory."""
    project = tmp_path / "project"
    project.mkdir()
    return project
