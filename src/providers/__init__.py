"""Cluster backends behind one provider contract.

Importing this package registers the ``kind`` and ``eks`` backends.
"""

from .base import ClusterHandle, ClusterSpec, Provider, ProviderState, create_provider, registered_providers
from .eks import EksProvider
from .kind import KindProvider

__all__ = [
    "ClusterHandle",
    "ClusterSpec",
    "EksProvider",
    "KindProvider",
    "Provider",
    "ProviderState",
    "create_provider",
    "registered_providers",
]
