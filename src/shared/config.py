from __future__ import annotations

import json
import os
from typing import Any, Mapping, Optional

import structlog
import validators  # type: ignore
from pydantic import BaseModel, field_validator
from web3 import Web3

log = structlog.get_logger(__name__)

# Environment variable => config dict path
ENVIRONMENT_KEYS: dict[str, tuple[str, str]] = {
    "BLOCKCHAIN_URL_FOR_LISTENERS": ("chain", "rpc_url"),
    "ORBIT_SPHERE_ADDRESS": ("chain", "contract_address"),
    "RABBITMQ_CONNECTION_URL": ("broker", "url"),
    "REDIS_URL": ("redis", "url"),
}

# Optional JSON file holding tunables
CONFIG_PATH_ENV = "ORBITSPHERE_CONFIG_PATH"


def _check_url(value: str, schemes: tuple[str, ...]) -> str:
    """Checks that a URL has one of the expected schemes and a host

    Args:
        value (str): URL to check
        schemes (tuple[str, ...]): accepted schemes

    Returns:
        str: unchanged URL

    Raises:
        ValueError: URL is malformed or has an unexpected scheme
    """
    if not validators.url(
        value, simple_host=True, validate_scheme=lambda scheme: scheme in schemes
    ):
        raise ValueError(f"expected a {'/'.join(schemes)} URL, got {value!r}")
    return value


class ConfigCatchUp(BaseModel):
    """Expected config[chain][catch_up] format"""

    batch_size: int = 1000
    retry_delay: float = 1.0
    retry_backoff: float = 2.0
    retry_max_delay: float = 30.0
    retry_tries: int = 5
    period: float = 30.0
    start_block: Optional[int] = None
    live_buffer_size: int = 1000

    @field_validator("batch_size", "live_buffer_size")
    @classmethod
    def check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


class ConfigChain(BaseModel):
    """Expected config[chain] format"""

    rpc_url: str
    contract_address: str
    trail_head_blocks: int = 0
    catch_up: ConfigCatchUp = ConfigCatchUp()

    @field_validator("rpc_url")
    @classmethod
    def check_rpc_url(cls, value: str) -> str:
        return _check_url(value, ("ws", "wss"))

    @field_validator("contract_address")
    @classmethod
    def check_contract_address(cls, value: str) -> str:
        if not Web3.is_address(value):
            raise ValueError("contract_address is not a valid address")
        return Web3.to_checksum_address(value)


class ConfigBroker(BaseModel):
    """Expected config[broker] format"""

    url: str
    prefetch_count: int = 10

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        return _check_url(value, ("amqp", "amqps"))


class ConfigRedis(BaseModel):
    """Expected config[redis] format"""

    url: str = "redis://localhost:6379/0"
    checkpoint_key: str = "orbitsphere:checkpoint"

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        return _check_url(value, ("redis", "rediss"))


class ConfigLog(BaseModel):
    """Expected config[log] format"""

    path: str = "orbitsphere_listener.log"
    max_file_size: int = 2**30  # 1GB
    backup_count: int = 2


class Config(BaseModel):
    """Expected config format"""

    chain: ConfigChain
    broker: ConfigBroker
    redis: ConfigRedis = ConfigRedis()
    log: ConfigLog = ConfigLog()


def load_validated_config(
    path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> Config:
    """Loads and validates configuration from an optional JSON file and the
    environment. Environment values override file values.

    Args:
        path (str, optional): Path to config file. Defaults to $ORBITSPHERE_CONFIG_PATH.
        environ (Mapping[str, str], optional): Environment. Defaults to os.environ.

    Returns:
        Config: parsed and validated config

    Raises:
        ValidationError: if config is not valid or required values are missing
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get(CONFIG_PATH_ENV)

    config_data: dict[str, Any] = {}
    if path:
        with open(path) as config_file:
            config_data = json.load(config_file)
        log.debug("Loaded config file", path=path)

    for env_key, (section, key) in ENVIRONMENT_KEYS.items():
        value = environ.get(env_key)
        if value:
            config_data.setdefault(section, {})[key] = value

    return Config(**config_data)
