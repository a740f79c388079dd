"""Lumberjack wire protocol: frame codec and record flattening."""

from .flatten import FlatRecord, flatten_record
from .frames import (
    MAX_FRAME_SIZE,
    MAX_SEQUENCE,
    AckFrame,
    AckKind,
    AckReader,
    encode_authentication,
    encode_data,
    encode_identification,
    encode_pairs,
    encode_window,
)

__all__ = [
    "MAX_FRAME_SIZE",
    "MAX_SEQUENCE",
    "AckFrame",
    "AckKind",
    "AckReader",
    "FlatRecord",
    "encode_authentication",
    "encode_data",
    "encode_identification",
    "encode_pairs",
    "encode_window",
    "flatten_record",
]
