"""Exception types raised by the ingestion core."""

from __future__ import annotations


class MaillogError(Exception):
    """Base class for ingestion errors."""


class ConfigurationError(MaillogError, ValueError):
    """Missing or invalid configuration. Fatal at startup."""


class DuplicateEventError(MaillogError):
    """An equivalent event is already stored."""


class IpLookupError(MaillogError, RuntimeError):
    """The external IP lookup failed for one address."""

    def __init__(self, ip_address: str, message: str) -> None:
        super().__init__(f"IP lookup failed for {ip_address}: {message}")
        self.ip_address = ip_address


class UnknownConnectionError(MaillogError, KeyError):
    """No connection record exists for the given address."""

    def __str__(self) -> str:
        return f"IP address not found: {self.args[0]}" if self.args else "IP address not found"
