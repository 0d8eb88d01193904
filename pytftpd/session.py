"""Per-transfer reliable delivery.

A request accepted on the well-known port becomes a :class:`TransferSession`.
The session binds its own ephemeral port (its transfer ID), owns the file for
the lifetime of the transfer, and moves one block at a time: send, wait for the
answer, re-send the same packet on timeout.

    RRQ:  DATA 1 -> ACK 1 -> DATA 2 -> ... -> DATA n (< 512 bytes) -> ACK n
    WRQ:  ACK 0 -> DATA 1 -> ACK 1 -> ... -> DATA n (< 512 bytes) -> ACK n
"""
from __future__ import annotations

import logging
import socket
import time
from abc import ABC, abstractmethod
from typing import BinaryIO, Callable, Optional, Tuple

from .files import FileStore, PathTraversalError
from .logging import SessionLoggerAdapter
from .packets import (
    BLOCK_SIZE,
    MAX_DATAGRAM_SIZE,
    AckPacket,
    DataPacket,
    DecodeError,
    ErrorCodes,
    ErrorPacket,
    IPacket,
    ReadRequestPacket,
    TftpException,
    WriteRequestPacket,
    decode,
    next_block,
    previous_block,
)
from .stats import TransferStats

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
MAX_RETRIES = 5

Address = Tuple[str, int]


class RejectionError(TftpException):
    """A request refused before any transfer channel exists."""

    def __init__(
        self, error: ErrorCodes, message: str = None, notify_peer: bool = True
    ) -> None:
        self.error = error
        self.message = message if message is not None else error.description
        self.notify_peer = notify_peer
        super().__init__(f"[{error.value}] {self.message}")

    @property
    def packet(self) -> ErrorPacket:
        return ErrorPacket.from_code(self.error, self.message)


class TransferError(TftpException):
    """Ends a running session. ``error`` is what the peer is told, if anything."""

    error: ErrorCodes = ErrorCodes.NOT_DEFINED
    notify_peer: bool = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def recipient(self) -> Optional[Address]:
        """Where the error packet goes; None means the session peer."""
        return None


class TransferTimeout(TransferError):
    def __init__(self, message: str = "Transfer timed out") -> None:
        super().__init__(message)


class ProtocolViolation(TransferError):
    error = ErrorCodes.ILLEGAL_TFTP_OPERATION


class DiskFullError(TransferError):
    error = ErrorCodes.DISK_FULL_OR_ALLOCATION_EXCEEDED


class UnknownTransferId(TransferError):
    error = ErrorCodes.UNKNOWN_TRANSFER_ID

    def __init__(self, address: Address) -> None:
        super().__init__("Datagram from unknown transfer ID %s:%d" % address)
        self.address = address

    @property
    def recipient(self) -> Optional[Address]:
        return self.address


class PeerError(TransferError):
    notify_peer = False

    def __init__(self, packet: ErrorPacket) -> None:
        super().__init__(
            f"Peer sent error (code:{packet.error_code}): {packet.error_message}"
        )
        self.packet = packet


class TransferChannel:
    """The server side of one transfer: a UDP socket on an ephemeral port that
    only talks to ``peer``.
    """

    def __init__(self, sock: socket.socket, peer: Address) -> None:
        self.sock = sock
        self.peer = peer

    @classmethod
    def open(cls, peer: Address, bind_addr: str = "0.0.0.0") -> TransferChannel:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((bind_addr, 0))
        except OSError:
            sock.close()
            raise
        return cls(sock, peer)

    @property
    def port(self) -> int:
        return self.sock.getsockname()[1]

    def send(self, packet: IPacket, address: Address = None) -> None:
        self.sock.sendto(packet.data(), address or self.peer)

    def receive(self, timeout: float) -> IPacket:
        """Wait at most ``timeout`` seconds for the next datagram.

        Raises ``socket.timeout``, :class:`UnknownTransferId` for datagrams from
        anyone but the peer, or :class:`DecodeError`.
        """
        self.sock.settimeout(timeout)
        # one byte of slack so an oversized DATA packet is seen as malformed
        data, address = self.sock.recvfrom(MAX_DATAGRAM_SIZE + 1)
        if tuple(address[:2]) != tuple(self.peer):
            raise UnknownTransferId(address[:2])
        return decode(data)

    def close(self) -> None:
        self.sock.close()


ChannelFactory = Callable[[Address], TransferChannel]


class TransferSession(ABC):
    direction: str

    def __init__(
        self,
        request: ReadRequestPacket,
        peer: Address,
        file: BinaryIO,
        store: FileStore,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        channel_factory: ChannelFactory = None,
        log: logging.Logger = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.request = request
        self.filename = request.filename
        self.mode = request.mode
        self.peer = peer
        self.file = file
        self.store = store
        self.timeout = timeout
        self.max_retries = max_retries
        self.channel_factory = channel_factory or TransferChannel.open
        self.log = SessionLoggerAdapter(log or logger, peer)
        self.clock = clock
        self.stats = TransferStats(clock)
        self.channel: Optional[TransferChannel] = None
        self.completed = False

    def __str__(self) -> str:
        return f"<{self.__class__.__name__} {self.filename} ({self.mode.value})>"

    @classmethod
    @abstractmethod
    def open_file(cls, store: FileStore, filename: str) -> BinaryIO:
        """Open the target file or raise :class:`RejectionError`."""

    def run(self) -> TransferStats:
        """Run the transfer to completion or failure. Never raises for
        per-transfer problems; the file and socket are always released.
        """
        self.log.info(
            "Starting %s of %s, mode: %s",
            self.direction,
            self.filename,
            self.mode.value,
        )
        self.stats.start()
        try:
            self.channel = self.channel_factory(self.peer)
            self.log.debug("Transfer channel on port %d", self.channel.port)
            self._transfer()
            self.completed = True
        except TransferError as exc:
            self.log.error("%s", exc.message)
            if exc.notify_peer:
                self._send_error(exc.error, exc.message, exc.recipient)
        except OSError as exc:
            self.log.error("Transport failure: %s", exc)
            self._send_error(ErrorCodes.NOT_DEFINED, "Server internal error")
        finally:
            self.stats.stop()
            self._teardown()

        self.log.info("Transfer statistics: %s", self.stats.report())
        return self.stats

    @abstractmethod
    def _transfer(self) -> None:
        """Move the whole file, raising TransferError or OSError on failure."""

    @abstractmethod
    def _answers(self, packet: IPacket) -> bool:
        """Whether ``packet`` is the reply the last sent unit is waiting for."""

    @abstractmethod
    def _on_unexpected(self, packet: IPacket) -> None:
        """Handle a well-formed packet that is not the awaited reply."""

    def _exchange(self, unit: IPacket) -> IPacket:
        """Send ``unit`` and return the packet that answers it.

        Each timeout re-sends the same ``unit``; after ``max_retries``
        re-sends the next timeout raises :class:`TransferTimeout`.
        """
        retries = 0
        while True:
            self._send(unit)
            reply = self._await_reply(self.clock() + self.timeout)
            if reply is not None:
                return reply

            retries += 1
            if retries > self.max_retries:
                raise TransferTimeout()
            self.stats.retransmissions += 1
            self.log.warning(
                "Timed out waiting for reply to %s, retransmitting (%d/%d)",
                unit,
                retries,
                self.max_retries,
            )

    def _await_reply(self, deadline: float) -> Optional[IPacket]:
        while True:
            remaining = deadline - self.clock()
            if remaining <= 0:
                return None
            try:
                packet = self.channel.receive(remaining)
            except socket.timeout:
                return None
            except DecodeError as exc:
                raise ProtocolViolation(f"Invalid packet format: {exc}") from exc

            if isinstance(packet, ErrorPacket):
                raise PeerError(packet)
            if self._answers(packet):
                return packet
            # the deadline stays put, stray packets don't buy more time
            self._on_unexpected(packet)

    def _send(self, packet: IPacket) -> None:
        self.channel.send(packet)
        if isinstance(packet, DataPacket):
            self.stats.blocks_sent += 1
        self.log.debug("Sent %s", packet)

    def _send_error(
        self, error: ErrorCodes, message: str, address: Address = None
    ) -> None:
        if self.channel is None:
            return
        try:
            self.channel.send(ErrorPacket.from_code(error, message), address)
        except OSError as exc:
            self.log.error("Failed to send error packet: %s", exc)
        else:
            self.log.info("Sent error packet: [%d] %s", error.value, message)

    def _teardown(self) -> None:
        self.file.close()
        if self.channel is not None:
            self.channel.close()


class DownloadSession(TransferSession):
    """Serves a read request: the server sends DATA, the client ACKs."""

    direction = "download"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.block_number = 1

    @classmethod
    def open_file(cls, store: FileStore, filename: str) -> BinaryIO:
        try:
            return store.open_for_read(filename)
        except PathTraversalError as exc:
            raise RejectionError(ErrorCodes.ACCESS_VIOLATION, str(exc)) from exc
        except OSError as exc:
            raise RejectionError(ErrorCodes.FILE_NOT_FOUND, "File not found") from exc

    def _transfer(self) -> None:
        while True:
            chunk = self._read_block()
            packet = DataPacket(self.block_number, chunk)
            self._exchange(packet)
            self.stats.bytes_transferred += len(chunk)
            self.log.debug("Received ACK, block number: %d", self.block_number)

            if packet.end_of_data:
                self.log.info("File transfer complete: %s", self.filename)
                return
            self.block_number = next_block(self.block_number)

    def _read_block(self) -> bytes:
        try:
            return self.file.read(BLOCK_SIZE)
        except OSError as exc:
            raise TransferError(f"Failed to read {self.filename}: {exc}") from exc

    def _answers(self, packet: IPacket) -> bool:
        return (
            isinstance(packet, AckPacket) and packet.block_number == self.block_number
        )

    def _on_unexpected(self, packet: IPacket) -> None:
        if isinstance(packet, AckPacket):
            # duplicate ACKs are never answered, RFC 1350 "Sorcerer's Apprentice"
            self.log.warning(
                "Received invalid ACK, expected block number: %d, "
                "received block number: %d",
                self.block_number,
                packet.block_number,
            )
            return
        raise ProtocolViolation(f"Expected ACK, received {packet.packet_type.name}")


class UploadSession(TransferSession):
    """Serves a write request: the client sends DATA, the server ACKs.

    The destination file only survives a transfer whose final block was
    received, written and acknowledged.
    """

    direction = "upload"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.expected_block = 1

    @classmethod
    def open_file(cls, store: FileStore, filename: str) -> BinaryIO:
        try:
            return store.create_exclusive(filename)
        except PathTraversalError as exc:
            raise RejectionError(ErrorCodes.ACCESS_VIOLATION, str(exc)) from exc
        except FileExistsError as exc:
            raise RejectionError(
                ErrorCodes.FILE_ALREADY_EXISTS, "File already exists"
            ) from exc
        except OSError as exc:
            raise RejectionError(
                ErrorCodes.ACCESS_VIOLATION, "Failed to create file"
            ) from exc

    def _transfer(self) -> None:
        reply = AckPacket(0)
        while True:
            packet = self._exchange(reply)
            self._write(packet.raw_data)
            self.stats.blocks_received += 1
            self.stats.bytes_transferred += len(packet.raw_data)
            self.log.debug(
                "Received data packet, block number: %d, size: %d bytes",
                packet.block_number,
                len(packet.raw_data),
            )

            reply = AckPacket(packet.block_number)
            self.expected_block = next_block(self.expected_block)

            if packet.end_of_data:
                self._flush()
                self._send(reply)
                self.log.info("File upload complete: %s", self.filename)
                return

    def _write(self, data: bytes) -> None:
        try:
            self.file.write(data)
        except OSError as exc:
            raise DiskFullError(f"Failed to write to file: {exc}") from exc

    def _flush(self) -> None:
        try:
            self.file.flush()
        except OSError as exc:
            raise DiskFullError(f"Failed to write to file: {exc}") from exc

    def _answers(self, packet: IPacket) -> bool:
        return (
            isinstance(packet, DataPacket)
            and packet.block_number == self.expected_block
        )

    def _on_unexpected(self, packet: IPacket) -> None:
        if not isinstance(packet, DataPacket):
            raise ProtocolViolation(
                f"Expected DATA, received {packet.packet_type.name}"
            )

        last_acked = previous_block(self.expected_block)
        if packet.block_number != last_acked:
            raise ProtocolViolation(
                f"Received out-of-order block {packet.block_number}, "
                f"expected {self.expected_block}"
            )

        # our ACK was lost, the client is retransmitting
        self.log.warning(
            "Received duplicate packet, block number: %d, expected: %d",
            packet.block_number,
            self.expected_block,
        )
        self._send(AckPacket(last_acked))
        self.stats.retransmissions += 1

    def _teardown(self) -> None:
        try:
            self.file.close()
        except OSError as exc:
            self.log.error("Failed to close %s: %s", self.filename, exc)
            self.completed = False
        if self.channel is not None:
            self.channel.close()

        if not self.completed:
            try:
                self.store.delete(self.filename)
            except OSError as exc:
                self.log.error(
                    "Failed to delete incomplete file %s: %s", self.filename, exc
                )


def accept_request(
    raw: bytes, client_addr: Address, store: FileStore, **options
) -> TransferSession:
    """Turn the first datagram of a transfer into a ready-to-run session.

    Raises :class:`RejectionError` if the datagram is not a usable request or
    the file precondition fails. No socket is bound here; the session binds its
    own when it runs.
    """
    log = SessionLoggerAdapter(options.get("log") or logger, client_addr)

    try:
        packet = decode(raw)
    except DecodeError as exc:
        log.warning("Received invalid TFTP packet: %s", exc)
        raise RejectionError(
            ErrorCodes.ILLEGAL_TFTP_OPERATION, "Invalid packet format"
        ) from exc

    if isinstance(packet, ErrorPacket):
        # never answer an error, or two endpoints can bounce errors forever
        log.info(
            "Client reported error %d: %s", packet.error_code, packet.error_message
        )
        raise RejectionError(
            ErrorCodes.NOT_DEFINED, packet.error_message, notify_peer=False
        )

    if not isinstance(packet, ReadRequestPacket):
        # DATA and ACK belong on a transfer channel, not the request port
        log.warning("Received %s without a transfer", packet.packet_type.name)
        raise RejectionError(ErrorCodes.UNKNOWN_TRANSFER_ID, "Unknown transfer ID")

    if isinstance(packet, WriteRequestPacket):
        session_class = UploadSession
    else:
        session_class = DownloadSession

    log.info(
        "Client requests %s of file: %s, mode: %s",
        session_class.direction,
        packet.filename,
        packet.mode.value,
    )
    try:
        file = session_class.open_file(store, packet.filename)
    except RejectionError as exc:
        log.error("Rejected %s: %s", packet.filename, exc)
        raise

    return session_class(packet, client_addr, file, store, **options)
