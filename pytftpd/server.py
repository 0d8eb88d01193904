"""TFTP server: listens on the well-known port and hands each request to a
session that finishes the transfer on its own port.
"""
from __future__ import annotations

import logging
import socket
import socketserver
import sys
import threading
from functools import partial
from pathlib import Path
from typing import Optional, Set, Tuple

from .files import FileStore
from .packets import (
    DEFAULT_PORT,
    DecodeError,
    ReadRequestPacket,
    TftpException,
    decode,
)
from .session import (
    DEFAULT_TIMEOUT,
    MAX_RETRIES,
    Address,
    RejectionError,
    TransferChannel,
    accept_request,
)
from .util.io import PathLike

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIRECTORY = Path("tftp_root")

RequestKey = Tuple[Address, str]


class TftpServerRequestHandler(socketserver.BaseRequestHandler):

    server: SerialTftpServer

    def handle(self) -> None:
        data, sock = self.request
        logger.debug("Data received from %s:%d", *self.client_address)

        key = _request_key(data, self.client_address)
        if key is not None and not self.server.claim(key):
            # the peer missed our first reply; the live session retransmits it
            logger.info(
                "Ignoring repeated request for %s from %s:%d", key[1], *key[0]
            )
            return

        try:
            self._dispatch(data, sock)
        finally:
            if key is not None:
                self.server.release(key)

    def _dispatch(self, data: bytes, sock: socket.socket) -> None:
        try:
            session = accept_request(
                data,
                self.client_address,
                self.server.store,
                **self.server.session_options,
            )
        except RejectionError as exc:
            if exc.notify_peer:
                sock.sendto(exc.packet.data(), self.client_address)
            return

        session.run()


def _request_key(data: bytes, client_address: Address) -> Optional[RequestKey]:
    try:
        packet = decode(data)
    except DecodeError:
        return None
    if not isinstance(packet, ReadRequestPacket):
        return None
    return client_address, packet.filename


class SerialTftpServer(socketserver.UDPServer):
    """Runs every transfer to completion before reading the next request."""

    allow_reuse_address = True

    def __init__(
        self,
        listen_addr: str = "0.0.0.0",
        listen_port: int = DEFAULT_PORT,
        data_directory: PathLike = DEFAULT_DATA_DIRECTORY,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self.store = FileStore(data_directory)
        self._active: Set[RequestKey] = set()
        self._active_lock = threading.Lock()
        self.session_options = dict(
            timeout=timeout,
            max_retries=max_retries,
            channel_factory=partial(TransferChannel.open, bind_addr=listen_addr),
        )
        super().__init__((listen_addr, listen_port), TftpServerRequestHandler)
        listen_addr_, listen_port_ = self.socket.getsockname()[:2]
        logger.info(
            "Serving %s on %s:%d", self.store.root_dir, listen_addr_, listen_port_
        )

    def claim(self, key: RequestKey) -> bool:
        """Mark a request as live; False if the same peer already has it running."""
        with self._active_lock:
            if key in self._active:
                return False
            self._active.add(key)
            return True

    def release(self, key: RequestKey) -> None:
        with self._active_lock:
            self._active.discard(key)

    def handle_error(self, request, client_address: Tuple[str, int]) -> None:
        # a failed request never takes the listener down
        logger.exception(
            "Error while handling request from %s:%d", *client_address[:2]
        )


class TftpServer(socketserver.ThreadingMixIn, SerialTftpServer):
    """One thread per accepted request."""

    daemon_threads = True


def _parse_user_args(argv=None) -> None:
    import argparse

    from .client import TftpClient
    from .logging import DEFAULT_LOG_FILE, UserLogger
    from .packets import TransferMode
    from .util import cli
    from .util.io import parse_path

    argument_parser = argparse.ArgumentParser(
        prog="pytftpd",
        description="Trivial File Transfer Protocol (TFTP) server and client.",
    )

    subcommands = argument_parser.add_subparsers(
        title="command", dest="command", required=True
    )
    client_parser = subcommands.add_parser("client", help="TFTP Client")
    server_parser = subcommands.add_parser("server", help="TFTP Server")
    for parser in (client_parser, server_parser):
        cli.add_verbose(parser)
        cli.add_retransmission(parser, DEFAULT_TIMEOUT, MAX_RETRIES)

    client_parser.add_argument(
        "-s",
        "--server",
        type=str,
        help="IP or hostname of remote TFTP server.",
        required=True,
    )
    client_parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help="Port of remote TFTP server.",
    )
    client_parser.add_argument(
        "-m",
        "--mode",
        default=TransferMode.OCTET,
        help="Transfer mode.",
        type=TransferMode,
        action=cli.EnumAction,
    )
    client_actions = client_parser.add_mutually_exclusive_group(required=True)
    client_actions.add_argument(
        "-d",
        "--download",
        help="Download file from remote server. First argument is the remote filepath, "
        "second argument is the local filepath.",
        nargs=2,
        metavar=("REMOTE", "LOCAL"),
        type=parse_path,
    )
    client_actions.add_argument(
        "-u",
        "--upload",
        help="Upload file to remote server. First argument is the local filepath, "
        "second argument is the remote filepath.",
        nargs=2,
        metavar=("LOCAL", "REMOTE"),
        type=parse_path,
    )

    server_parser.add_argument(
        "-l",
        "--listen",
        help="IP address or hostname to listen on. By default binds to all.",
        default="0.0.0.0",
        type=str,
    )
    server_parser.add_argument(
        "-p", "--port", help="Port to listen on.", type=int, default=DEFAULT_PORT
    )
    server_parser.add_argument(
        "-d",
        "--data_dir",
        help="Directory to use as the ROOT TFTP directory.",
        type=parse_path,
        default=DEFAULT_DATA_DIRECTORY,
    )
    server_parser.add_argument(
        "--log-file",
        help="File the server log is appended to.",
        type=parse_path,
        default=Path(DEFAULT_LOG_FILE),
    )
    server_parser.add_argument(
        "--single-threaded",
        help="Serve one transfer at a time.",
        action="store_true",
        default=False,
    )

    parsed_args = argument_parser.parse_args(argv)

    level = logging.DEBUG if parsed_args.verbose else logging.INFO
    user_logger = UserLogger().add_stderr(level)

    if parsed_args.command == "client":
        client = TftpClient(
            parsed_args.server,
            parsed_args.port,
            timeout=parsed_args.timeout,
            max_retries=parsed_args.retries,
        )
        try:
            if parsed_args.download is not None:
                remote, local = parsed_args.download
                logger.debug("Downloading %s -> %s", remote, local)
                client.download_file(remote.as_posix(), local, mode=parsed_args.mode)
            else:
                local, remote = parsed_args.upload
                logger.debug("Uploading %s -> %s", local, remote)
                client.upload_file(remote.as_posix(), local, mode=parsed_args.mode)
        except (TftpException, OSError) as exc:
            logger.error("Transfer failed: %s", exc)
            sys.exit(1)
    elif parsed_args.command == "server":
        user_logger.add_file(parsed_args.log_file, level)
        server_class = SerialTftpServer if parsed_args.single_threaded else TftpServer
        with server_class(
            parsed_args.listen,
            parsed_args.port,
            data_directory=parsed_args.data_dir,
            timeout=parsed_args.timeout,
            max_retries=parsed_args.retries,
        ) as server:
            try:
                server.serve_forever()
            except KeyboardInterrupt:
                logger.error("KeyboardInterrupt detected, exiting")
                sys.exit(1)
    else:
        raise argparse.ArgumentError(
            None, f"Unrecognized command {parsed_args.command}"
        )


def main() -> None:
    _parse_user_args()


if __name__ == "__main__":
    main()
