"""Network-facing clients: the Lumberjack producer and the query consumer."""

from .consumer import LogmetConsumer
from .producer import ConnectResult, LogmetProducer

__all__ = ["ConnectResult", "LogmetConsumer", "LogmetProducer"]
