"""
Chain provider factory and exports
"""
from .base_adapter import ChainProvider, SubscriptionHandle, normalize_log
from .evm_adapter import EVMAdapter
from .websocket_adapter import WebSocketAdapter


def get_provider(chain_config: dict) -> ChainProvider:
    """
    Factory function to get the provider for a chain.

    Args:
        chain_config: the 'chain' section of pulsechain.yaml

    Returns:
        WebSocketAdapter when a ws_url is configured, else EVMAdapter
    """
    if chain_config.get('ws_url'):
        return WebSocketAdapter(chain_config)
    return EVMAdapter(chain_config)


__all__ = [
    'ChainProvider',
    'SubscriptionHandle',
    'normalize_log',
    'EVMAdapter',
    'WebSocketAdapter',
    'get_provider'
]
