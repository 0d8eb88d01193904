"""Blocking TFTP client, one transfer at a time."""
from __future__ import annotations

import io
import logging
import socket
from functools import partial
from typing import BinaryIO, Iterator, Optional, Type, Union

from .packets import (
    BLOCK_SIZE,
    DEFAULT_PORT,
    MAX_DATAGRAM_SIZE,
    AckPacket,
    DataPacket,
    ErrorCodes,
    ErrorPacket,
    IPacket,
    ReadRequestPacket,
    TftpException,
    TransferMode,
    WriteRequestPacket,
    decode,
    next_block,
)
from .session import DEFAULT_TIMEOUT, MAX_RETRIES
from .util.io import PathLike, to_path

logger = logging.getLogger(__name__)


class ProtocolException(TftpException):
    pass


class TransferTimeout(ProtocolException):
    pass


class TftpPacketClient:
    def __init__(
        self,
        server_ip: str,
        server_port: int = DEFAULT_PORT,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.server_ip = socket.gethostbyname(server_ip)
        self.initial_server_port = server_port
        self.timeout = timeout
        self.sock: Optional[socket.socket] = None
        self.server_port: Optional[int] = None
        self.client_port: Optional[int] = None

    def connect(self) -> None:
        logger.debug("Initializing socket")
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("0.0.0.0", 0))
        self.sock.settimeout(self.timeout)
        self.client_port = self.sock.getsockname()[1]
        self.server_port = None
        logger.debug("Client TID = %d", self.client_port)

    def close(self) -> None:
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def receive(self) -> IPacket:
        """Next packet from the server's transfer ID. Raises ``socket.timeout``."""
        while True:
            data, (sender_ip, sender_port) = self.sock.recvfrom(MAX_DATAGRAM_SIZE + 1)
            logger.debug("Received data from %s:%d", sender_ip, sender_port)

            if sender_ip != self.server_ip:
                continue
            if self.server_port is None:
                # the first reply fixes the server's TID
                self.server_port = sender_port
                break
            if self.server_port == sender_port:
                break

            logger.warning(
                "Datagram from unknown transfer ID %s:%d", sender_ip, sender_port
            )
            self.sock.sendto(
                ErrorPacket.from_code(ErrorCodes.UNKNOWN_TRANSFER_ID).data(),
                (sender_ip, sender_port),
            )

        return decode(data)

    def send(self, packet: IPacket) -> None:
        self.sock.sendto(
            packet.data(),
            (self.server_ip, (self.server_port or self.initial_server_port)),
        )


class TftpClient:
    def __init__(
        self,
        server_ip: str,
        server_port: int = DEFAULT_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self.packet_client = TftpPacketClient(server_ip, server_port, timeout)
        self.max_retries = max_retries

    def download_file(
        self,
        remote_filename: str,
        local_filepath: PathLike,
        mode: TransferMode = TransferMode.OCTET,
        overwrite: bool = False,
    ) -> None:
        local_filepath = to_path(local_filepath)
        # "x" raises if the file already exists, without a check-then-open race
        file_mode = "wb" if overwrite else "xb"

        with local_filepath.open(file_mode) as fh:
            try:
                for packet in self._read(str(remote_filename), mode):
                    fh.write(packet.raw_data)
            except BaseException:
                fh.close()
                local_filepath.unlink(missing_ok=True)
                raise

    def read_file(
        self, remote_filename: str, mode: TransferMode = TransferMode.OCTET
    ) -> io.BytesIO:
        response_stream = io.BytesIO()
        for packet in self._read(remote_filename, mode):
            response_stream.write(packet.raw_data)
        response_stream.seek(0)
        return response_stream

    def upload_file(
        self,
        remote_filename: str,
        local_filepath: PathLike,
        mode: TransferMode = TransferMode.OCTET,
    ) -> None:
        with to_path(local_filepath).open("rb") as fh:
            blocks = iter(partial(fh.read, BLOCK_SIZE), b"")
            self._write(str(remote_filename), blocks, mode)

    def write_file(
        self,
        remote_filename: str,
        data: Union[str, bytes, BinaryIO],
        mode: TransferMode = TransferMode.OCTET,
    ) -> None:
        if isinstance(data, str):
            data = io.BytesIO(data.encode("utf-8"))
        elif isinstance(data, bytes):
            data = io.BytesIO(data)

        blocks = iter(partial(data.read, BLOCK_SIZE), b"")
        self._write(str(remote_filename), blocks, mode)

    def _exchange(
        self,
        unit: IPacket,
        reply_type: Type[IPacket],
        block_number: int,
        resend_on_stale: bool = False,
    ) -> IPacket:
        """Send ``unit`` until a ``reply_type`` for ``block_number`` comes back."""
        retries = 0
        while True:
            logger.debug("Sending %s", unit)
            self.packet_client.send(unit)
            try:
                while True:
                    packet = self.packet_client.receive()
                    if isinstance(packet, ErrorPacket):
                        raise ProtocolException(
                            f"[{packet.error_code}] {packet.error_message}"
                        )
                    if not isinstance(packet, reply_type):
                        raise ProtocolException(
                            f"Expected {reply_type.packet_type.name}, "
                            f"received {packet.packet_type.name}"
                        )
                    if packet.block_number == block_number:
                        return packet

                    logger.warning(
                        "Expected block_number=%d, got block_number=%d, probably dupe",
                        block_number,
                        packet.block_number,
                    )
                    if resend_on_stale:
                        self.packet_client.send(unit)
            except socket.timeout:
                retries += 1
                if retries > self.max_retries:
                    raise TransferTimeout("Transfer timed out") from None
                logger.warning(
                    "Timeout, retransmitting (%d/%d)", retries, self.max_retries
                )

    def _read(
        self, remote_filename: str, mode: TransferMode = TransferMode.OCTET
    ) -> Iterator[DataPacket]:
        self.packet_client.connect()
        try:
            unit: IPacket = ReadRequestPacket(filename=remote_filename, mode=mode)
            block_number = 1
            while True:
                packet = self._exchange(
                    unit, DataPacket, block_number, resend_on_stale=True
                )
                yield packet

                unit = AckPacket(packet.block_number)
                if packet.end_of_data:
                    self.packet_client.send(unit)
                    logger.info("Read file complete")
                    return
                block_number = next_block(block_number)
        finally:
            self.packet_client.close()

    def _write(
        self,
        remote_filename: str,
        input_data: Iterator[bytes],
        mode: TransferMode = TransferMode.OCTET,
    ) -> None:
        self.packet_client.connect()
        try:
            unit: IPacket = WriteRequestPacket(filename=remote_filename, mode=mode)
            # first response should be Ack with block number 0
            block_number = 0
            while True:
                try:
                    self._exchange(unit, AckPacket, block_number)
                except TransferTimeout:
                    if not (isinstance(unit, DataPacket) and unit.end_of_data):
                        raise
                    # lost final ACK, the server has every block
                    logger.warning(
                        "No ACK for final block %d, assuming complete", block_number
                    )
                    return
                if isinstance(unit, DataPacket) and unit.end_of_data:
                    logger.info("Write file complete")
                    return

                # an exact multiple of 512 still needs an empty final block
                chunk = next(input_data, b"")
                block_number = next_block(block_number)
                unit = DataPacket(block_number, chunk)
        finally:
            self.packet_client.close()
