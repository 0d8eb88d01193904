from __future__ import annotations

import argparse
from enum import Enum
from typing import Any, Sequence, Type


def add_verbose(parser: argparse.ArgumentParser) -> None:
    """Adds standardized verbose option to parser."""
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Log debug information (every packet) as well.",
    )


def add_retransmission(
    parser: argparse.ArgumentParser, timeout: float, retries: int
) -> None:
    """Adds the per-attempt timeout and retry bound shared by client and server."""
    parser.add_argument(
        "-t",
        "--timeout",
        type=positive_float,
        default=timeout,
        help="Seconds to wait for a reply before retransmitting.",
    )
    parser.add_argument(
        "-r",
        "--retries",
        type=int,
        default=retries,
        help="Retransmissions of a single packet before giving up.",
    )


def positive_float(s: str) -> float:
    value = float(s)
    if value <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive number, got {s}")
    return value


class EnumAction(argparse.Action):
    """Argparse handling for Enums, matched on the member value."""

    _enum: Type[Enum]

    def __init__(self, **kwargs) -> None:
        enum_type = kwargs.pop("type", None)

        if enum_type is None:
            raise ValueError("Argument 'type' missing")

        if not issubclass(enum_type, Enum):
            raise TypeError(f"Expected type Enum, found {enum_type}")

        kwargs.setdefault("choices", tuple(e.value for e in enum_type))

        super().__init__(**kwargs)

        self._enum = enum_type

    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: str | Sequence[Any] | None,
        option_string: str | None = None,
    ) -> None:
        setattr(namespace, self.dest, self._enum(values))
