from __future__ import annotations

from chatcoord.service.errors import SerializationError, StoreUnavailableError

# Storage adapters raise the same types the services surface to callers.
StoreUnavailable = StoreUnavailableError

__all__ = ["StoreUnavailable", "StoreUnavailableError", "SerializationError"]
