"""Path management for the PhishBlock state directory."""

from pathlib import Path

from .config import PhishBlockConfig


class StatePaths:
    """Manages paths within the PhishBlock state directory."""

    def __init__(self, state_root: Path):
        """Initialize state paths from root directory.

        Args:
            state_root: Root directory holding the record store and journal
        """
        self.root = state_root

        self.tmp = state_root / "tmp"

        self.db_file = state_root / "reports.sqlite"
        self.journal_file = state_root / "journal.jsonl"

    @classmethod
    def from_config(cls, config: PhishBlockConfig) -> "StatePaths":
        """Create StatePaths from a PhishBlockConfig."""
        return cls(config.state_dir)

    def get_all_directories(self) -> list[Path]:
        """Get list of all directories that should exist in the state root."""
        return [self.root, self.tmp]
