"""Bridge configuration — JSON file defaults overridden by the environment.

Resolution order (later wins):
    1. BridgeConfig field defaults
    2. config/bridge.json (or the path given to load_config)
    3. TRUSTBRIDGE_* environment variables, after loading a .env file

Environment variables:
    TRUSTBRIDGE_QUORUM_THRESHOLD       int
    TRUSTBRIDGE_CONFIRMATION_DEPTH     int
    TRUSTBRIDGE_MAX_ANCHOR_ATTEMPTS    int
    TRUSTBRIDGE_ANCHOR_RETRY_INTERVAL  float (seconds)
    TRUSTBRIDGE_QUORUM_POLL_INTERVAL   float (seconds)
    TRUSTBRIDGE_KEY_ID                 str
    TRUSTBRIDGE_MEMPOOL_API_URL        str
    TRUSTBRIDGE_EVM_RPC_URL            str
    TRUSTBRIDGE_EVENT_LOG_PATH         str
    TRUSTBRIDGE_DVN_ENDPOINT           str

EVM chains the transaction monitor can query come from a built-in
registry. Entries under "evm_chains" in the config file add chains or
replace built-in ones with the same chain_id.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from dotenv import load_dotenv

from trustbridge.errors import NotFound

ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = ROOT / "config" / "bridge.json"
ENV_PREFIX = "TRUSTBRIDGE_"


@dataclass(frozen=True)
class EvmChainConfig:
    """One EVM chain the transaction monitor can query."""
    chain_id: int
    name: str
    rpc_url: str
    block_explorer: str = ""
    native_token: str = "ETH"

    def __post_init__(self) -> None:
        if self.chain_id < 1:
            raise ValueError(f"chain_id must be >= 1, got {self.chain_id}")
        if not self.rpc_url:
            raise ValueError(f"Chain {self.chain_id} has no rpc_url")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EvmChainConfig:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown chain config keys: {sorted(unknown)}")
        try:
            values = dict(data, chain_id=int(data["chain_id"]))
        except KeyError:
            raise ValueError("Chain config needs a chain_id") from None
        return cls(**values)

    def explorer_url(self, tx_hash: str) -> Optional[str]:
        if not self.block_explorer:
            return None
        return f"{self.block_explorer.rstrip('/')}/tx/{tx_hash}"


DEFAULT_EVM_CHAINS: tuple[EvmChainConfig, ...] = (
    EvmChainConfig(
        chain_id=1,
        name="Ethereum Mainnet",
        rpc_url="https://eth-mainnet.g.alchemy.com/v2/demo",
        block_explorer="https://etherscan.io",
    ),
    EvmChainConfig(
        chain_id=11155111,
        name="Sepolia Testnet",
        rpc_url="https://eth-sepolia.g.alchemy.com/v2/demo",
        block_explorer="https://sepolia.etherscan.io",
    ),
    EvmChainConfig(
        chain_id=137,
        name="Polygon Mainnet",
        rpc_url="https://polygon-rpc.com",
        block_explorer="https://polygonscan.com",
        native_token="MATIC",
    ),
    EvmChainConfig(
        chain_id=80002,
        name="Polygon Amoy Testnet",
        rpc_url="https://rpc-amoy.polygon.technology",
        block_explorer="https://amoy.polygonscan.com",
        native_token="POL",
    ),
)


class ChainRegistry:
    """EVM chain configs keyed by chain id.

    Usage:
        registry = ChainRegistry.with_defaults()
        registry.get(137).rpc_url
    """

    def __init__(self, chains: Iterable[EvmChainConfig] = ()) -> None:
        self._chains: dict[int, EvmChainConfig] = {}
        for chain in chains:
            self.register(chain)

    @classmethod
    def with_defaults(cls, extra: Iterable[EvmChainConfig] = ()) -> ChainRegistry:
        registry = cls(DEFAULT_EVM_CHAINS)
        for chain in extra:
            registry.register(chain)
        return registry

    def register(self, chain: EvmChainConfig) -> None:
        """Add a chain, replacing any config with the same chain_id."""
        self._chains[chain.chain_id] = chain

    def get(self, chain_id: int) -> EvmChainConfig:
        try:
            return self._chains[chain_id]
        except KeyError:
            raise NotFound("Chain", str(chain_id)) from None

    def supported_chains(self) -> list[EvmChainConfig]:
        return [self._chains[k] for k in sorted(self._chains)]

    def __contains__(self, chain_id: object) -> bool:
        return chain_id in self._chains

    def __len__(self) -> int:
        return len(self._chains)


@dataclass(frozen=True)
class BridgeConfig:
    """Runtime parameters for the whole pipeline."""
    quorum_threshold: int = 2
    destination_thresholds: dict[int, int] = field(default_factory=dict)
    quorum_poll_interval: float = 30.0
    max_quorum_polls: int = 120
    anchor_retry_interval: float = 30.0
    max_anchor_attempts: int = 5
    confirmation_depth: int = 6
    confirmation_poll_interval: float = 30.0
    max_confirmation_polls: int = 240
    key_id: str = "anchor_key_1"
    derivation_path: tuple[str, ...] = ()
    tx_vbytes: int = 250
    mempool_api_url: str = "https://mempool.space/api"
    evm_rpc_url: Optional[str] = None
    max_response_bytes: int = 2_000_000
    event_log_path: Optional[str] = None
    evm_chains: tuple[EvmChainConfig, ...] = ()
    dvn_endpoint: Optional[str] = None

    def __post_init__(self) -> None:
        if self.quorum_threshold < 1:
            raise ValueError(f"quorum_threshold must be >= 1, got {self.quorum_threshold}")
        for chain, threshold in self.destination_thresholds.items():
            if threshold < 1:
                raise ValueError(
                    f"Threshold for destination {chain} must be >= 1, got {threshold}"
                )
        for name in (
            "max_quorum_polls", "max_anchor_attempts", "confirmation_depth",
            "max_confirmation_polls", "tx_vbytes", "max_response_bytes",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        for name in (
            "quorum_poll_interval", "anchor_retry_interval", "confirmation_poll_interval",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BridgeConfig:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        values = dict(data)
        if "derivation_path" in values:
            values["derivation_path"] = tuple(values["derivation_path"])
        if "destination_thresholds" in values:
            values["destination_thresholds"] = {
                int(k): int(v) for k, v in values["destination_thresholds"].items()
            }
        if "evm_chains" in values:
            values["evm_chains"] = tuple(
                EvmChainConfig.from_dict(chain) for chain in values["evm_chains"]
            )
        return cls(**values)

    def derivation_path_bytes(self) -> tuple[bytes, ...]:
        return tuple(part.encode("utf-8") for part in self.derivation_path)

    def quorum_config(self) -> dict[str, Any]:
        return {
            "quorum_threshold": self.quorum_threshold,
            "destination_thresholds": dict(self.destination_thresholds),
        }

    def anchor_config(self) -> dict[str, Any]:
        return {
            "key_id": self.key_id,
            "derivation_path": self.derivation_path_bytes(),
            "max_anchor_attempts": self.max_anchor_attempts,
            "confirmation_depth": self.confirmation_depth,
            "tx_vbytes": self.tx_vbytes,
        }

    def monitor_config(self) -> dict[str, Any]:
        return {
            "confirmation_depth": self.confirmation_depth,
            "max_response_bytes": self.max_response_bytes,
        }

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["derivation_path"] = list(self.derivation_path)
        data["evm_chains"] = [asdict(chain) for chain in self.evm_chains]
        return data

    def chain_registry(self) -> ChainRegistry:
        return ChainRegistry.with_defaults(self.evm_chains)


_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "QUORUM_THRESHOLD": ("quorum_threshold", int),
    "CONFIRMATION_DEPTH": ("confirmation_depth", int),
    "MAX_ANCHOR_ATTEMPTS": ("max_anchor_attempts", int),
    "ANCHOR_RETRY_INTERVAL": ("anchor_retry_interval", float),
    "QUORUM_POLL_INTERVAL": ("quorum_poll_interval", float),
    "KEY_ID": ("key_id", str),
    "MEMPOOL_API_URL": ("mempool_api_url", str),
    "EVM_RPC_URL": ("evm_rpc_url", str),
    "EVENT_LOG_PATH": ("event_log_path", str),
    "DVN_ENDPOINT": ("dvn_endpoint", str),
}


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Typed overrides from TRUSTBRIDGE_* variables. Raises ValueError on bad numbers."""
    overrides: dict[str, Any] = {}
    for suffix, (name, kind) in _ENV_FIELDS.items():
        raw = environ.get(ENV_PREFIX + suffix)
        if raw is None or raw == "":
            continue
        try:
            overrides[name] = kind(raw)
        except ValueError:
            raise ValueError(
                f"{ENV_PREFIX}{suffix} must be {kind.__name__}, got {raw!r}"
            ) from None
    return overrides


def load_config(
    path: Optional[Path] = None,
    env_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BridgeConfig:
    """Build a BridgeConfig from file and environment.

    A missing default config file is not an error; a missing explicit
    path is.
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid config file {config_path}: {e}") from e
    elif path is not None:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    if environ is None:
        load_dotenv(env_file if env_file is not None else ROOT / ".env")
        environ = os.environ

    config = BridgeConfig.from_dict(data)
    return replace(config, **env_overrides(environ))
