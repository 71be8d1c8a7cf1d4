"""Tests for Settings (defaults, GRIDCI_* environment, overrides)."""

import pytest

from gridci.config import Settings
from gridci.errors import WorkflowError


class TestSettings:

    def test_defaults(self):
        s = Settings.from_env({})
        assert s.workspace == "."
        assert s.workers is None
        assert s.cache_dir == ".gridci/cache"
        assert s.artifact_dir == ".gridci/artifacts"
        assert s.cache_keep == 3
        assert s.event == "push"
        assert s.channel == "stable"
        assert s.debug is False

    def test_from_env(self):
        s = Settings.from_env(
            {
                "GRIDCI_WORKERS": "4",
                "GRIDCI_CACHE_DIR": "/tmp/cache",
                "GRIDCI_CACHE_KEEP": "5",
                "GRIDCI_EVENT": "pull_request",
                "GRIDCI_DEBUG": "yes",
            }
        )
        assert s.workers == 4
        assert s.cache_dir == "/tmp/cache"
        assert s.cache_keep == 5
        assert s.event == "pull_request"
        assert s.debug is True

    def test_invalid_number(self):
        with pytest.raises(WorkflowError):
            Settings.from_env({"GRIDCI_WORKERS": "many"})

    def test_overrides_skip_none(self):
        s = Settings.from_env({"GRIDCI_EVENT": "schedule"}).with_overrides(event=None, workers=2)
        assert s.event == "schedule"
        assert s.workers == 2

    def test_unknown_override(self):
        with pytest.raises(TypeError):
            Settings().with_overrides(colour="blue")
