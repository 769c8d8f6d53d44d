"""electrumsync - Electrum JSON-RPC client with reconnect, subscriptions and batch wallet queries."""

__version__ = "0.1.0"

from electrumsync.api import ElectrumApi
from electrumsync.batch import AddressDescriptor, AggregateResult, BatchQueryEngine, ItemOutcome
from electrumsync.client import ConnectionState, ElectrumClient
from electrumsync.core.errors import ElectrumError
from electrumsync.core.protocol import CallResult
from electrumsync.core.retry import PersistencePolicy
from electrumsync.subscriptions import SubscriptionHandle

__all__ = [
    "AddressDescriptor",
    "AggregateResult",
    "BatchQueryEngine",
    "CallResult",
    "ConnectionState",
    "ElectrumApi",
    "ElectrumClient",
    "ElectrumError",
    "ItemOutcome",
    "PersistencePolicy",
    "SubscriptionHandle",
    "__version__",
]
