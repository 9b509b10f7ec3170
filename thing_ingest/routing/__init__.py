from .topic_router import (
    WIFI_SSID_TOPIC,
    InboundTopic,
    MessageKind,
    Route,
    TopicRouter,
    inbound_topics,
    parse_inbound,
    qualify_topic,
)

__all__ = [
    "WIFI_SSID_TOPIC",
    "InboundTopic",
    "MessageKind",
    "Route",
    "TopicRouter",
    "inbound_topics",
    "parse_inbound",
    "qualify_topic",
]
