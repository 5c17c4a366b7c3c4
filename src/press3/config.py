# src/press3/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from press3.env import load_dotenv_if_present
from press3.errors import ValidationError

Json = Dict[str, Any]

PRESS3_CONF_NAME = "press3.config.yml"

SUPPORTED_NETWORKS = ("testnet", "mainnet")

_DEFAULT_RPC_URLS = {
    "testnet": "https://fullnode.testnet.sui.io:443",
    "mainnet": "https://fullnode.mainnet.sui.io:443",
}
_DEFAULT_AGGREGATOR_URLS = {
    "testnet": "https://aggregator.walrus-testnet.walrus.space",
    "mainnet": "https://aggregator.walrus-mainnet.walrus.space",
}


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except Exception:
        return int(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


@dataclass(frozen=True)
class Press3Config:
    network: str
    publish_secret: str

    # Ledger program + registry object. Empty until a deployment exists.
    package_id: str
    registry_object_id: str

    rpc_url: str
    aggregator_url: str

    # Blob retention
    epochs: int
    deletable: bool

    # Readiness guard after a fresh deployment
    ready_max_attempts: int
    ready_delay_ms: int

    # Upload flow
    certify_retries: int
    store_attempts: int
    upload_concurrency: int

    # Gas budget model: per_call * calls + base (MIST)
    gas_per_call: int
    gas_base: int

    log_level: str


def default_config() -> Press3Config:
    return Press3Config(
        network="testnet",
        publish_secret="",
        package_id="",
        registry_object_id="",
        rpc_url=_DEFAULT_RPC_URLS["testnet"],
        aggregator_url=_DEFAULT_AGGREGATOR_URLS["testnet"],
        epochs=1,
        deletable=True,
        ready_max_attempts=10,
        ready_delay_ms=1_000,
        certify_retries=0,
        store_attempts=3,
        upload_concurrency=4,
        gas_per_call=10_000_000,
        gas_base=10_000_000,
        log_level="INFO",
    )


def validate_config(cfg: Press3Config) -> None:
    """Fail-fast validation; raises ValidationError naming the bad setting."""
    if cfg.network not in SUPPORTED_NETWORKS:
        raise ValidationError(
            reason="invalid_network",
            details=f"{cfg.network!r}; must be one of: {', '.join(SUPPORTED_NETWORKS)}",
        )
    if int(cfg.epochs) < 1:
        raise ValidationError(reason="invalid_epochs", details=f"{cfg.epochs}; must be a positive integer")
    if int(cfg.ready_max_attempts) < 1:
        raise ValidationError(reason="invalid_ready_max_attempts", details=cfg.ready_max_attempts)
    if int(cfg.ready_delay_ms) < 0:
        raise ValidationError(reason="invalid_ready_delay_ms", details=cfg.ready_delay_ms)
    if int(cfg.certify_retries) < 0:
        raise ValidationError(reason="invalid_certify_retries", details=cfg.certify_retries)
    if int(cfg.store_attempts) < 1:
        raise ValidationError(reason="invalid_store_attempts", details=cfg.store_attempts)
    if int(cfg.upload_concurrency) < 1:
        raise ValidationError(reason="invalid_upload_concurrency", details=cfg.upload_concurrency)
    if int(cfg.gas_per_call) <= 0 or int(cfg.gas_base) < 0:
        raise ValidationError(reason="invalid_gas_budget", details=(cfg.gas_per_call, cfg.gas_base))


def read_project_file(path: str | Path) -> Json:
    """Read press3.config.yml. A missing file reads as {}."""
    p = Path(path)
    if not p.is_file():
        return {}
    raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError(reason="project_file_not_mapping", details=str(p))
    return raw


def _parse_epochs(v: Any, default: int) -> int:
    if v is None or str(v).strip() == "":
        return int(default)
    try:
        parsed = int(str(v).strip())
    except ValueError:
        raise ValidationError(reason="invalid_epochs", details=f"{v}; must be a positive integer") from None
    return parsed


def load_config(*, project_file: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Press3Config:
    """Defaults -> project file -> environment, then validate."""
    if env is None:
        load_dotenv_if_present()
    e = dict(os.environ if env is None else env)
    d = default_config()

    raw = read_project_file(project_file or PRESS3_CONF_NAME)

    network = _as_str(e.get("WALRUS_NETWORK") or raw.get("network"), d.network).strip().lower()
    epochs = _parse_epochs(e.get("WALRUS_EPOCHS") or raw.get("epochs"), d.epochs)

    cfg = Press3Config(
        network=network,
        publish_secret=_as_str(e.get("WALRUS_PUBLISH_SECRET"), d.publish_secret),
        package_id=_as_str(e.get("PRESS3_PACKAGE_ID") or raw.get("package_id"), d.package_id).strip(),
        registry_object_id=_as_str(e.get("PRESS3_OBJECT_ID") or raw.get("press3_object_id"), d.registry_object_id).strip(),
        rpc_url=_as_str(e.get("PRESS3_RPC_URL"), _DEFAULT_RPC_URLS.get(network, d.rpc_url)).rstrip("/"),
        aggregator_url=_as_str(e.get("PRESS3_AGGREGATOR_URL"), _DEFAULT_AGGREGATOR_URLS.get(network, d.aggregator_url)).rstrip("/"),
        epochs=epochs,
        deletable=_as_bool(e.get("WALRUS_DELETABLE", raw.get("deletable")), d.deletable),
        ready_max_attempts=_as_int(e.get("PRESS3_READY_MAX_ATTEMPTS"), d.ready_max_attempts),
        ready_delay_ms=_as_int(e.get("PRESS3_READY_DELAY_MS"), d.ready_delay_ms),
        certify_retries=_as_int(e.get("PRESS3_CERTIFY_RETRIES"), d.certify_retries),
        store_attempts=_as_int(e.get("PRESS3_STORE_ATTEMPTS"), d.store_attempts),
        upload_concurrency=_as_int(e.get("PRESS3_UPLOAD_CONCURRENCY"), d.upload_concurrency),
        gas_per_call=_as_int(e.get("PRESS3_GAS_PER_CALL"), d.gas_per_call),
        gas_base=_as_int(e.get("PRESS3_GAS_BASE"), d.gas_base),
        log_level=_as_str(e.get("PRESS3_LOG_LEVEL"), d.log_level).strip().upper(),
    )

    validate_config(cfg)
    return cfg


def resolve_registry_object_id(
    explicit: Optional[str] = None,
    *,
    project_file: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> str:
    """Explicit value, then PRESS3_OBJECT_ID, then the project file."""
    if isinstance(explicit, str) and explicit.strip():
        return explicit.strip()

    e = os.environ if env is None else env
    env_value = (e.get("PRESS3_OBJECT_ID") or "").strip()
    if env_value:
        return env_value

    raw = read_project_file(project_file or PRESS3_CONF_NAME)
    file_value = str(raw.get("press3_object_id") or "").strip()
    if file_value:
        return file_value

    raise ValidationError(
        reason="missing_registry_object_id",
        details=f"provide it explicitly, via PRESS3_OBJECT_ID, or in {PRESS3_CONF_NAME}",
    )


def write_project_file(path: str | Path, *, package_id: str, registry_object_id: str) -> None:
    Path(path).write_text(
        yaml.safe_dump({"package_id": package_id, "press3_object_id": registry_object_id}, sort_keys=True),
        encoding="utf-8",
    )


def explorer_tx_url(network: str, digest: str) -> str:
    return f"https://suiscan.xyz/{network}/tx/{digest}"
