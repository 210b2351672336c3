"""Engine configuration with environment-variable overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .identity import normalize_address
from .operation import DraftEncoding
from .permit import DEFAULT_DOMAIN_NAME


DEFAULT_HOME = Path.home() / ".patron"
DEFAULT_CHAIN_ID = 8453
DEFAULT_PAYMASTER = "0x0000000000000000000000000000000000000001"
DEFAULT_ENVIRONMENT = "0x5ff137d4b0fdcd49dca30c7cf57e578a026d2789"

# Metered cost of the paymaster's own settlement work, charged per unit of fee
# on top of the operation's cost.
DEFAULT_VERIFICATION_OVERHEAD = 35_000


@dataclass
class EngineConfig:
    chain_id: int = DEFAULT_CHAIN_ID
    paymaster: str = DEFAULT_PAYMASTER
    environment: str = DEFAULT_ENVIRONMENT
    verification_overhead: int = DEFAULT_VERIFICATION_OVERHEAD
    domain_name: str = DEFAULT_DOMAIN_NAME
    draft_encoding: DraftEncoding = DraftEncoding.COMPONENT
    home: Path = field(default_factory=lambda: DEFAULT_HOME)

    def __post_init__(self) -> None:
        self.paymaster = normalize_address(self.paymaster)
        self.environment = normalize_address(self.environment)
        self.draft_encoding = DraftEncoding(self.draft_encoding)
        self.home = Path(self.home)
        if self.chain_id <= 0:
            raise ValueError("chain_id must be > 0")
        if self.verification_overhead < 0:
            raise ValueError("verification_overhead must be >= 0")

    @property
    def db_path(self) -> Path:
        return self.home / "patron.sqlite3"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.home / ".secrets" / "audit_hmac.key"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Build a config from ``PATRON_*`` environment variables."""
        home = os.getenv("PATRON_HOME")
        return cls(
            chain_id=int(os.getenv("PATRON_CHAIN_ID", DEFAULT_CHAIN_ID)),
            paymaster=os.getenv("PATRON_PAYMASTER_ADDRESS", DEFAULT_PAYMASTER),
            environment=os.getenv("PATRON_ENVIRONMENT_ADDRESS", DEFAULT_ENVIRONMENT),
            verification_overhead=int(
                os.getenv("PATRON_VERIFICATION_OVERHEAD", DEFAULT_VERIFICATION_OVERHEAD)
            ),
            domain_name=os.getenv("PATRON_DOMAIN_NAME", DEFAULT_DOMAIN_NAME),
            draft_encoding=DraftEncoding(os.getenv("PATRON_DRAFT_ENCODING", DraftEncoding.COMPONENT.value)),
            home=Path(home) if home else Path.home() / ".patron",
        )
