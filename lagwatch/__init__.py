"""Kafka consumer lag monitoring: cluster offsets, offsets-topic decoding and consumer tracking."""

__version__ = "0.1.0"

__all__ = [
    "app",
    "decoding",
    "kafka_client",
    "cluster",
    "zk_client",
    "consumer_coordinator",
]