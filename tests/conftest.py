# tests/conftest.py
# Shared fixtures for the auto-phases tests.

import importlib.util
from pathlib import Path

import pytest

SCRIPTS_DIR = Path(__file__).resolve().parent.parent / "scripts"


def load_script(module_name: str, filename: str):
    """Load a hyphenated script from scripts/ as a module."""
    spec = importlib.util.spec_from_file_location(module_name, SCRIPTS_DIR / filename)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class RecordingNotifier:
    """Stands in for run-guards Notifier; remembers every notification."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    def notify(self, title: str, message: str, level: str = "info") -> None:
        self.sent.append((title, message, level))

    def levels(self) -> list[str]:
        return [level for _, _, level in self.sent]


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project root with an empty .planning/phases directory."""
    (tmp_path / ".planning" / "phases").mkdir(parents=True)
    return tmp_path


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
