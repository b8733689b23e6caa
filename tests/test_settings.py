"""
Tests for environment-driven settings.
"""

import pytest
from pydantic import ValidationError

from devspace.config import Settings


@pytest.mark.unit
class TestSettings:

    def test_failure_policy_defaults_to_abort(self):
        assert Settings().session_failure_policy == "abort"

    def test_failure_policy_from_environment(self, monkeypatch):
        monkeypatch.setenv("DEVSPACE_SESSION_FAILURE_POLICY", "isolate")

        assert Settings().session_failure_policy == "isolate"

    def test_unknown_failure_policy_is_rejected(self, monkeypatch):
        with pytest.raises(ValidationError):
            Settings(session_failure_policy="sometimes")

        monkeypatch.setenv("DEVSPACE_SESSION_FAILURE_POLICY", "retry")
        with pytest.raises(ValidationError):
            Settings()
