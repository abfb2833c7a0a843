# Realtime channel
from erp_prime.realtime.credentials import Credential
from erp_prime.realtime.dispatcher import EventDispatcher, EventHandlers
from erp_prime.realtime.endpoints import (
    EndpointCache,
    EndpointResolver,
    get_endpoint_cache,
    reset_endpoint_cache,
)
from erp_prime.realtime.events import EventKind, InboundEvent, parse_frame
from erp_prime.realtime.fallback import SSEFallbackTransport
from erp_prime.realtime.health import HealthProber
from erp_prime.realtime.reconnect import ReconnectionController, ReconnectPolicy
from erp_prime.realtime.session import RealtimeSession
from erp_prime.realtime.state import ConnectionState, ConnectionStateMachine
from erp_prime.realtime.subscription import SubscriptionManager
from erp_prime.realtime.transport import PrimaryTransport

__all__ = [
    "ConnectionState",
    "ConnectionStateMachine",
    "Credential",
    "EndpointCache",
    "EndpointResolver",
    "EventDispatcher",
    "EventHandlers",
    "EventKind",
    "HealthProber",
    "InboundEvent",
    "PrimaryTransport",
    "RealtimeSession",
    "ReconnectPolicy",
    "ReconnectionController",
    "SSEFallbackTransport",
    "SubscriptionManager",
    "get_endpoint_cache",
    "parse_frame",
    "reset_endpoint_cache",
]
