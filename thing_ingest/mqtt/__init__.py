"""Camino bus: cliente paho, ProcessMessage, pool de workers y receptor."""

from .async_processor import AsyncMessageProcessor
from .bus import NullBusClient, PahoBusClient
from .message_service import MessageService
from .receiver import MqttIngestReceiver, ReceiverStats

__all__ = [
    "AsyncMessageProcessor",
    "MessageService",
    "MqttIngestReceiver",
    "NullBusClient",
    "PahoBusClient",
    "ReceiverStats",
]
