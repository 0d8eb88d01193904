"""Trivial File Transfer Protocol (RFC 1350) server and client."""

__version__ = "0.2.0"
