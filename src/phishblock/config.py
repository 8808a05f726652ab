"""Configuration management for PhishBlock."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Python < 3.11


DEFAULT_VOTE_THRESHOLD = 10
DEFAULT_EXPLORER_TX_URL = "https://amoy.polygonscan.com/tx/{tx}"
DEFAULT_PRIMARY_GATEWAY = "https://gateway.pinata.cloud/ipfs/"
DEFAULT_BACKUP_GATEWAY = "https://w3s.link/ipfs/"


def _find_repo_root(start_dir: Path) -> Path:
    """Find repository root by walking upward looking for .git or pyproject.toml."""
    current_dir = start_dir

    while True:
        if (current_dir / ".git").exists() or (current_dir / "pyproject.toml").exists():
            return current_dir

        parent_dir = current_dir.parent

        # Stop if we reach filesystem root
        if parent_dir == current_dir:
            return start_dir

        current_dir = parent_dir


def _load_repo_config_data(repo_root: Path) -> Optional[dict]:
    """Load repo config data from .phishblock/config.toml if it exists."""
    config_file = repo_root / ".phishblock" / "config.toml"

    if not config_file.exists():
        return None

    try:
        with open(config_file, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        # If config file is malformed, ignore it
        return None


def _get_repo_config_value(data: Optional[dict], keys: list[str]) -> Optional[str]:
    """Safely get a nested repo config value as a string."""
    if not data:
        return None
    current = data
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    if isinstance(current, (str, int, float)) and not isinstance(current, bool):
        return str(current)
    return None


def _setting(name: str, repo_config: Optional[dict], keys: list[str], default: str) -> str:
    """Resolve a setting: environment variable, then repo config, then default."""
    value = os.environ.get(name)
    if value:
        return value
    repo_value = _get_repo_config_value(repo_config, keys)
    if repo_value:
        return repo_value
    return default


class ChainConfig(BaseModel):
    """Ledger connection settings."""

    rpc_url: str = Field(default="")
    private_key: str = Field(default="", repr=False)
    contract_address: str = Field(default="")
    confirm_timeout_seconds: int = Field(default=120)
    explorer_tx_url: str = Field(default=DEFAULT_EXPLORER_TX_URL)


class StorageConfig(BaseModel):
    """Content-addressed storage credentials and gateway hosts."""

    web3_storage_token: str = Field(default="", repr=False)
    pinata_jwt: str = Field(default="", repr=False)
    primary_gateway: str = Field(default=DEFAULT_PRIMARY_GATEWAY)
    backup_gateway: str = Field(default=DEFAULT_BACKUP_GATEWAY)
    upload_timeout_seconds: int = Field(default=60)


class SnapshotConfig(BaseModel):
    """Evidence snapshot limits."""

    timeout_seconds: float = Field(default=15.0)
    max_bytes: int = Field(default=8192)


class LeaseConfig(BaseModel):
    """Anchoring lease settings."""

    lease_seconds: int = Field(default=600)


class PhishBlockConfig(BaseModel):
    """Configuration for the anchoring and archival pipeline."""

    state_dir: Path = Field(
        default_factory=lambda: Path(os.environ.get("PHISHBLOCK_STATE_DIR", "./phishblock_state"))
    )
    vote_threshold: int = Field(default=DEFAULT_VOTE_THRESHOLD)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    snapshot: SnapshotConfig = Field(default_factory=SnapshotConfig)
    lease: LeaseConfig = Field(default_factory=LeaseConfig)

    model_config = {"frozen": False}

    @classmethod
    def from_env(cls, cli_state_dir: Optional[str] = None) -> "PhishBlockConfig":
        """Load configuration from environment variables, repo config, or defaults.

        Precedence per setting:

        1. CLI --state-dir option (state directory only)
        2. Environment variable
        3. repo-local .phishblock/config.toml (walk upward from CWD)
        4. Built-in default

        Args:
            cli_state_dir: State directory from CLI --state-dir option
        """
        repo_config = _load_repo_config_data(_find_repo_root(Path.cwd()))

        state_dir = cli_state_dir or _setting(
            "PHISHBLOCK_STATE_DIR", repo_config, ["state_dir"], "./phishblock_state"
        )

        return cls(
            state_dir=Path(state_dir).expanduser().resolve(),
            vote_threshold=int(
                _setting("VOTE_THRESHOLD", repo_config, ["vote_threshold"], str(DEFAULT_VOTE_THRESHOLD))
            ),
            chain=ChainConfig(
                rpc_url=_setting("BLOCKCHAIN_RPC", repo_config, ["chain", "rpc_url"], ""),
                # Secrets come from the environment only
                private_key=os.environ.get("BLOCKCHAIN_PRIVATE_KEY", ""),
                contract_address=_setting(
                    "BLOCKCHAIN_CONTRACT_ADDRESS", repo_config, ["chain", "contract_address"], ""
                ),
                confirm_timeout_seconds=int(
                    _setting("PHISHBLOCK_CONFIRM_TIMEOUT", repo_config, ["chain", "confirm_timeout_seconds"], "120")
                ),
                explorer_tx_url=_setting(
                    "PHISHBLOCK_EXPLORER_TX_URL", repo_config, ["chain", "explorer_tx_url"], DEFAULT_EXPLORER_TX_URL
                ),
            ),
            storage=StorageConfig(
                web3_storage_token=os.environ.get("NFT_TOKEN", ""),
                pinata_jwt=os.environ.get("PINATA_JWT", ""),
                primary_gateway=_setting(
                    "PHISHBLOCK_PRIMARY_GATEWAY", repo_config, ["storage", "primary_gateway"], DEFAULT_PRIMARY_GATEWAY
                ),
                backup_gateway=_setting(
                    "PHISHBLOCK_BACKUP_GATEWAY", repo_config, ["storage", "backup_gateway"], DEFAULT_BACKUP_GATEWAY
                ),
                upload_timeout_seconds=int(
                    _setting("PHISHBLOCK_UPLOAD_TIMEOUT", repo_config, ["storage", "upload_timeout_seconds"], "60")
                ),
            ),
            snapshot=SnapshotConfig(
                timeout_seconds=float(
                    _setting("PHISHBLOCK_SNAPSHOT_TIMEOUT", repo_config, ["snapshot", "timeout_seconds"], "15")
                ),
                max_bytes=int(
                    _setting("PHISHBLOCK_SNAPSHOT_MAX_BYTES", repo_config, ["snapshot", "max_bytes"], "8192")
                ),
            ),
            lease=LeaseConfig(
                lease_seconds=int(
                    _setting("PHISHBLOCK_LEASE_SECONDS", repo_config, ["lease", "lease_seconds"], "600")
                ),
            ),
        )
