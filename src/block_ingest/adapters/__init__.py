"""
Chain adapters and the registry that builds them from configuration.
"""

from collections.abc import Callable

from ..config import ChainConfig, RetryConfig
from .base import ChainAdapter
from .evm import EVMAdapter

AdapterFactory = Callable[[ChainConfig, RetryConfig], ChainAdapter]

ADAPTER_FACTORIES: dict[str, AdapterFactory] = {
    "EVM": EVMAdapter.from_config,
}


def create_adapter(chain_config: ChainConfig, retry: RetryConfig) -> ChainAdapter:
    """
    Build the adapter named by ``chain_config.adapter_type``.

    Raises:
        ValueError: If no adapter is registered for the type
    """
    try:
        factory = ADAPTER_FACTORIES[chain_config.adapter_type]
    except KeyError:
        raise ValueError(
            f"Unknown adapter_type `{chain_config.adapter_type}` for chain `{chain_config.name}`"
        ) from None
    return factory(chain_config, retry)


__all__ = ["ADAPTER_FACTORIES", "ChainAdapter", "EVMAdapter", "create_adapter"]
