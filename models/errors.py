"""
Error taxonomy shared by all Beetle components.

Configuration and naming errors are caller bugs and are raised at
registration time. Broker and store connection errors are transient and
retried inside the components before they surface. Handler failures are
contained per message by the subscriber.
"""
from __future__ import annotations


class BeetleError(Exception):
    """Root of all Beetle errors."""


class ConfigurationError(BeetleError):
    """Invalid or duplicate registration."""


class UnknownQueue(BeetleError):
    """Reference to a queue that was never registered."""


class UnknownMessage(BeetleError):
    """Reference to a message that was never registered."""


class SubscriberStateError(BeetleError):
    """Queue state transition that the subscriber does not allow."""


class DeliveryFailed(BeetleError):
    """No broker server acknowledged a publish."""

    def __init__(self, message_name: str, errors: dict[str, str] = None):
        self.message_name = message_name
        self.errors = errors or {}
        detail = ", ".join(f"{server}: {err}" for server, err in self.errors.items())
        super().__init__(f"message {message_name} could not be delivered ({detail or 'no servers'})")


class RPCTimeout(BeetleError, TimeoutError):
    """No reply arrived on the rpc reply channel in time."""


class HandlerException(BeetleError):
    """Recoverable handler failure. Drives the redelivery/threshold logic."""


class PermanentHandlerError(HandlerException):
    """Handler failure that must not be retried."""


class BrokerConnectionError(BeetleError):
    """Transient failure talking to a broker server."""

    def __init__(self, server: str, reason: str = ""):
        self.server = server
        super().__init__(f"broker {server} unavailable: {reason}" if reason else f"broker {server} unavailable")


class StoreConnectionError(BeetleError):
    """Transient failure talking to the deduplication store backend."""


class NoMasterError(StoreConnectionError):
    """No redis master is currently known."""
