"""Decoders for the binary records stored in the Kafka consumer offsets topic."""

from __future__ import annotations

import struct
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

_INT16 = struct.Struct(">h")
_INT32 = struct.Struct(">i")
_INT64 = struct.Struct(">q")


class DecodeError(Exception):
    """Raised when a record cannot be decoded.

    ``error_at`` names the field that could not be read, and ``partial`` holds
    whatever had been decoded before the failure, if anything.
    """

    def __init__(self, error_at: str, partial: Any = None) -> None:
        super().__init__(f"failed to decode {error_at}")
        self.error_at = error_at
        self.partial = partial


class Reader:
    """Sequential big-endian reader over a bytes object."""

    def __init__(self, data: bytes = b"") -> None:
        self._data = bytes(data)
        self._pos = 0

    def _take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise DecodeError("underflow")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def read_int16(self) -> int:
        """Read a signed 16-bit integer."""
        return _INT16.unpack(self._take(_INT16.size))[0]

    def read_int32(self) -> int:
        """Read a signed 32-bit integer."""
        return _INT32.unpack(self._take(_INT32.size))[0]

    def read_int64(self) -> int:
        """Read a signed 64-bit integer."""
        return _INT64.unpack(self._take(_INT64.size))[0]

    def read_bytes(self, count: int) -> bytes:
        """Consume and return up to count bytes; fewer are returned if the data runs out."""
        count = max(count, 0)
        chunk = self._data[self._pos:self._pos + count]
        self._pos += len(chunk)
        return chunk

    def skip(self, count: int) -> int:
        """Advance past up to count bytes and return how many were skipped."""
        return len(self.read_bytes(count))

    def remaining(self) -> int:
        """Return the number of unread bytes."""
        return len(self._data) - self._pos


@dataclass
class OffsetKey:
    """Key of a committed-offset record."""

    group: str = ""
    topic: str = ""
    partition: int = 0


@dataclass
class OffsetValue:
    """Value of a committed-offset record."""

    offset: int = 0
    timestamp: int = 0


@dataclass
class MetadataHeader:
    """Header of a group-metadata record."""

    protocol_type: str = ""
    generation: int = 0
    protocol: str = ""
    leader: str = ""
    current_state_timestamp: int = 0


@dataclass
class MetadataMember:
    """One member entry of a group-metadata record."""

    member_id: str = ""
    group_instance_id: str = ""
    client_id: str = ""
    client_host: str = ""
    rebalance_timeout: int = 0
    session_timeout: int = 0
    assignment: dict[str, list[int]] = field(default_factory=dict)


@contextmanager
def _field(name: str, partial: Any) -> Iterator[None]:
    try:
        yield
    except DecodeError as exc:
        raise DecodeError(name, partial) from exc


def read_string(reader: Reader) -> str:
    """Read an int16 length-prefixed string; a length of -1 yields an empty string."""
    length = reader.read_int16()
    if length == -1:
        return ""
    if length < 0:
        raise DecodeError("string")
    raw = reader.read_bytes(length)
    if len(raw) != length:
        raise DecodeError("string")
    return raw.decode("utf-8", errors="replace")


def decode_offset_key_v0(reader: Reader) -> OffsetKey:
    """Decode a version 0 or 1 offset key (group, topic, partition)."""
    key = OffsetKey()
    with _field("group", key):
        key.group = read_string(reader)
    with _field("topic", key):
        key.topic = read_string(reader)
    with _field("partition", key):
        key.partition = reader.read_int32()
    return key


def decode_offset_value_v0(reader: Reader) -> OffsetValue:
    """Decode a version 0 or 1 offset value."""
    value = OffsetValue()
    with _field("offset", value):
        value.offset = reader.read_int64()
    with _field("metadata", value):
        read_string(reader)
    with _field("timestamp", value):
        value.timestamp = reader.read_int64()
    return value


def decode_offset_value_v3(reader: Reader) -> OffsetValue:
    """Decode a version 3 offset value, which carries a leader epoch."""
    value = OffsetValue()
    with _field("offset", value):
        value.offset = reader.read_int64()
    with _field("leaderEpoch", value):
        reader.read_int32()
    with _field("metadata", value):
        read_string(reader)
    with _field("timestamp", value):
        value.timestamp = reader.read_int64()
    return value


def _decode_header_common(reader: Reader, header: MetadataHeader) -> None:
    with _field("protocol_type", header):
        header.protocol_type = read_string(reader)
    with _field("generation", header):
        header.generation = reader.read_int32()
    with _field("protocol", header):
        header.protocol = read_string(reader)
    with _field("leader", header):
        header.leader = read_string(reader)


def decode_metadata_value_header(reader: Reader) -> MetadataHeader:
    """Decode a version 0 or 1 group metadata header."""
    header = MetadataHeader()
    _decode_header_common(reader, header)
    return header


def decode_metadata_value_header_v2(reader: Reader) -> MetadataHeader:
    """Decode a version 2 or 3 group metadata header, including the state timestamp."""
    header = MetadataHeader()
    _decode_header_common(reader, header)
    with _field("current_state_timestamp", header):
        header.current_state_timestamp = reader.read_int64()
    return header


def decode_metadata_member(reader: Reader, member_version: int) -> MetadataMember:
    """Decode one group member entry for the given metadata value version."""
    member = MetadataMember()
    with _field("member_id", member):
        member.member_id = read_string(reader)
    if member_version == 3:
        with _field("group_instance_id", member):
            member.group_instance_id = read_string(reader)
    with _field("client_id", member):
        member.client_id = read_string(reader)
    with _field("client_host", member):
        member.client_host = read_string(reader)
    if member_version >= 1:
        with _field("rebalance_timeout", member):
            member.rebalance_timeout = reader.read_int32()
    with _field("session_timeout", member):
        member.session_timeout = reader.read_int32()

    with _field("subscription_bytes", member):
        subscription_length = reader.read_int32()
    if subscription_length > 0:
        reader.skip(subscription_length)

    with _field("assignment_bytes", member):
        assignment_length = reader.read_int32()
    if assignment_length > 0:
        assignment_reader = Reader(reader.read_bytes(assignment_length))
        with _field("consumer_protocol_version", member):
            protocol_version = assignment_reader.read_int16()
        if protocol_version < 0:
            raise DecodeError("consumer_protocol_version", member)
        try:
            member.assignment = decode_member_assignment_v0(assignment_reader)
        except DecodeError as exc:
            raise DecodeError("assignment", member) from exc
    return member


def decode_member_assignment_v0(reader: Reader) -> dict[str, list[int]]:
    """Decode a consumer protocol assignment into a topic to partitions mapping."""
    topics: dict[str, list[int]] = {}
    with _field("assignment_topic_count", topics):
        topic_count = reader.read_int32()
    if topic_count < 0:
        raise DecodeError("assignment_topic_count", topics)

    for _ in range(topic_count):
        with _field("topic_name", topics):
            topic = read_string(reader)
        with _field("assignment_partition_count", topics):
            partition_count = reader.read_int32()
        if partition_count < 0:
            raise DecodeError("assignment_partition_count", topics)
        partitions: list[int] = []
        topics[topic] = partitions
        for _ in range(partition_count):
            with _field("assignment_partition_id", topics):
                partitions.append(reader.read_int32())

    with _field("user_bytes", topics):
        user_data_length = reader.read_int32()
    if user_data_length > 0:
        reader.skip(user_data_length)
    return topics