from __future__ import annotations

import logging
import re
import threading
from pathlib import Path

import pytest

from pytftpd.logging import ColoredFormatter, SessionLoggerAdapter, UserLogger

LINE = re.compile(
    r"^\[\d{4}-\d\d-\d\d \d\d:\d\d:\d\d\] \[INFO\] \[10\.0\.0\.\d+:69\] line \d+$"
)


@pytest.fixture
def isolated_logger():
    logger = logging.getLogger("pytftpd.tests.isolated")
    logger.propagate = False
    yield logger
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


class TestSessionLoggerAdapter:
    def test_peer_prefix(self, caplog: pytest.LogCaptureFixture) -> None:
        adapter = SessionLoggerAdapter(
            logging.getLogger("pytftpd.tests"), ("10.0.0.1", 4242)
        )
        with caplog.at_level(logging.INFO, logger="pytftpd.tests"):
            adapter.info("Sent %s", "ACK")
        assert caplog.messages == ["[10.0.0.1:4242] Sent ACK"]


class TestUserLogger:
    def test_add_file_creates_directory(self, tmp_path: Path, isolated_logger) -> None:
        log_file = tmp_path / "logs" / "tftp_server.log"
        UserLogger(isolated_logger).add_file(log_file)
        isolated_logger.info("server started")

        content = log_file.read_text()
        assert re.match(r"^\[[\d\- :]+\] \[INFO\] server started$", content.strip())

    def test_concurrent_sessions_never_split_lines(
        self, tmp_path: Path, isolated_logger
    ) -> None:
        log_file = tmp_path / "tftp_server.log"
        UserLogger(isolated_logger).add_file(log_file)

        def session(n: int) -> None:
            adapter = SessionLoggerAdapter(isolated_logger, (f"10.0.0.{n}", 69))
            for i in range(200):
                adapter.info("line %d", i)

        threads = [threading.Thread(target=session, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        lines = log_file.read_text().splitlines()
        assert len(lines) == 8 * 200
        assert all(LINE.match(line) for line in lines)

    def test_level_is_lowered_not_raised(self, isolated_logger) -> None:
        isolated_logger.setLevel(logging.WARNING)
        UserLogger(isolated_logger).add_stderr(logging.DEBUG)
        assert isolated_logger.level == logging.DEBUG


class TestColoredFormatter:
    def test_error_is_red(self) -> None:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "boom", None, None)
        assert "\x1b[31m" in ColoredFormatter().format(record)
