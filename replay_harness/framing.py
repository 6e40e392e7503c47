"""
replay_harness/framing.py - Wire Framing

Each message is one type byte followed by payload bytes. On the wire a
message is either followed by an end marker (TerminatorCodec) or preceded by
its length (LengthPrefixCodec); which one must match the engine under test.

FramedConnection turns a byte stream into whole messages and keeps any bytes
read past the end of a message for the next receive.
"""
import logging
import select
import socket
import struct
import time
from typing import Optional, Protocol, Tuple

from .config import HarnessSettings, get_settings

logger = logging.getLogger(__name__)

RECV_CHUNK = 65536
LENGTH_PREFIX = struct.Struct("<I")


class FrameCodec(Protocol):
    def encode(self, message: bytes) -> bytes:
        ...

    def decode(self, buffer: bytes) -> Optional[Tuple[bytes, int]]:
        """Return (message, bytes consumed) for the first complete frame, or None."""
        ...


class TerminatorCodec:
    """Message followed by a fixed end marker."""

    def __init__(self, terminator: bytes):
        if not terminator:
            raise ValueError("terminator must not be empty")
        self.terminator = terminator

    def encode(self, message: bytes) -> bytes:
        return message + self.terminator

    def decode(self, buffer: bytes) -> Optional[Tuple[bytes, int]]:
        end = buffer.find(self.terminator)
        if end < 0:
            return None
        return buffer[:end], end + len(self.terminator)


class LengthPrefixCodec:
    """Message preceded by its length as a little-endian uint32."""

    def encode(self, message: bytes) -> bytes:
        return LENGTH_PREFIX.pack(len(message)) + message

    def decode(self, buffer: bytes) -> Optional[Tuple[bytes, int]]:
        if len(buffer) < LENGTH_PREFIX.size:
            return None
        (length,) = LENGTH_PREFIX.unpack_from(buffer)
        end = LENGTH_PREFIX.size + length
        if len(buffer) < end:
            return None
        return buffer[LENGTH_PREFIX.size:end], end


def codec_from_settings(settings: Optional[HarnessSettings] = None) -> FrameCodec:
    settings = settings or get_settings()
    if settings.FRAMING == "length":
        return LengthPrefixCodec()
    return TerminatorCodec(settings.frame_terminator)


class FramedConnection:
    """
    One player's TCP connection to the engine.

    Parameters:
        sock (socket.socket): Connected socket; ownership passes to this object.
        codec (FrameCodec): Framing used for both directions.
        label (str): Name used in log messages.
    """

    def __init__(self, sock: socket.socket, codec: FrameCodec, label: str = ""):
        self.sock = sock
        self.codec = codec
        self.label = label
        self._buffer = b""
        self._closed = False

    def send_message(self, message: bytes) -> bytes:
        """Frame `message` and write it in a single operation. Returns the frame."""
        frame = self.codec.encode(message)
        self.send_frame(frame)
        return frame

    def send_frame(self, frame: bytes) -> None:
        self.sock.sendall(frame)

    def has_pending(self) -> bool:
        """
        Report whether unread engine output is waiting on this connection.

        Bytes already buffered from an earlier read count. A closed peer does not.
        """
        if self._buffer:
            return True
        if self._closed:
            return False
        readable, _, _ = select.select([self.sock], [], [], 0)
        if not readable:
            return False
        try:
            peeked = self.sock.recv(1, socket.MSG_PEEK)
        except OSError:
            return False
        return bool(peeked)

    def receive(self, timeout: float) -> Optional[bytes]:
        """
        Read one complete message.

        Parameters:
            timeout (float): Seconds to wait for the whole message.

        Returns:
            bytes | None: The unframed message, or None if the timeout elapsed or
            the connection closed before a complete message arrived.
        """
        deadline = time.monotonic() + timeout
        while True:
            decoded = self.codec.decode(self._buffer)
            if decoded is not None:
                message, consumed = decoded
                self._buffer = self._buffer[consumed:]
                return message
            if self._closed:
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            readable, _, _ = select.select([self.sock], [], [], remaining)
            if not readable:
                return None
            try:
                chunk = self.sock.recv(RECV_CHUNK)
            except ConnectionResetError:
                chunk = b""
            if not chunk:
                logger.debug("Connection %s closed by engine", self.label)
                self._closed = True
                continue
            self._buffer += chunk

    def close(self) -> None:
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
        self.sock.close()
        self._closed = True
