"""Exception hierarchy shared by the completion client, connectors and the IRC engine."""

from __future__ import annotations


class BridgeError(Exception):
    """Base for all chatbridge errors."""


class CredentialError(BridgeError):
    """Access token could not be obtained or refreshed."""


class CompletionError(BridgeError):
    """Completion endpoint answered with an error."""

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class ProtocolError(BridgeError):
    """Fatal protocol violation for one IRC session (handshake, SASL, server ERROR)."""


class ConnectionLostError(BridgeError):
    """Session socket closed without the owner asking for it."""
