"""Python subscriber client for a running relay."""

from ccrelay.client.relay_client import RelayClient

__all__ = ["RelayClient"]
