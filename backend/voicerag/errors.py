"""
Error taxonomy for voice sessions.

Device errors are fatal for a connect attempt and never retried automatically.
Negotiation and transport errors are retried by the reconnect controller.
Retrieval and persistence errors never abort a conversation.
"""

import asyncio
import socket
import ssl
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional

import aiohttp


TERMINAL_CONNECTION_MESSAGE = "Connection lost. Please try refreshing the page."

FIREWALL_MARKERS = ("FortiGuard", "Access Blocked", "Web Page Blocked")


class FailureCode(str, Enum):
    """Machine-readable causes of a failed negotiation."""
    NETWORK_BLOCKED = "NETWORK_BLOCKED"
    INVALID_API_KEY = "INVALID_API_KEY"
    FORBIDDEN = "FORBIDDEN"
    RATE_LIMITED = "RATE_LIMITED"
    BACKEND_ERROR = "BACKEND_ERROR"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    CONNECTION_REFUSED = "ECONNREFUSED"
    TIMEOUT = "ETIMEDOUT"
    DNS_FAILURE = "ENOTFOUND"
    CERTIFICATE_ERROR = "CERTIFICATE_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    NOT_CONFIGURED = "NOT_CONFIGURED"


@dataclass
class NegotiationFailure:
    """Classified failure, serialized as the JSON body of an error response."""
    code: FailureCode
    error: str
    status: int = 502
    details: Optional[str] = None
    suggestion: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {k: v for k, v in asdict(self).items() if v is not None and k != "status"}
        payload["code"] = self.code.value
        return payload


class VoiceSessionError(Exception):
    """Base class for all voice session failures."""

    user_message = "Voice session error."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.user_message = message or self.user_message


class DeviceError(VoiceSessionError):
    """Local capture device could not be acquired."""

    user_message = "Microphone error: unknown failure"


class MicrophonePermissionError(DeviceError):
    user_message = "Microphone access denied. Please allow microphone access and try again."


class MicrophoneNotFoundError(DeviceError):
    user_message = "No microphone found. Please connect a microphone and try again."


class NegotiationError(VoiceSessionError):
    """Offer/answer exchange or ICE list retrieval failed."""

    def __init__(self, failure: NegotiationFailure):
        super().__init__(failure.error)
        self.failure = failure

    @property
    def code(self) -> FailureCode:
        return self.failure.code

    @property
    def suggestion(self) -> Optional[str]:
        return self.failure.suggestion


class TransportError(VoiceSessionError):
    """Peer connection failed to reach or keep the connected state."""


class RetryExhaustedError(VoiceSessionError):
    user_message = TERMINAL_CONNECTION_MESSAGE


class RetrievalError(VoiceSessionError):
    """Embedding or vector search failure. Callers degrade to 'no context'."""


def is_firewall_page(body: str) -> bool:
    """Detect an HTML block page served by a network firewall."""
    if not body or ("<!DOCTYPE html>" not in body and "<html" not in body.lower()):
        return False
    return any(marker in body for marker in FIREWALL_MARKERS)


def classify_http_failure(status: int, body: str, backend_url: str) -> NegotiationFailure:
    """
    Map a non-success response from the realtime backend to a failure.

    Args:
        status: HTTP status returned by the backend
        body: Response text (may be an HTML block page)
        backend_url: Backend base URL, used in remediation hints

    Returns:
        Classified NegotiationFailure keeping the upstream status
    """
    is_html = "<!DOCTYPE html>" in (body or "") or "<html" in (body or "").lower()

    if status == 401:
        return NegotiationFailure(
            code=FailureCode.INVALID_API_KEY,
            error="Invalid API key. Please check your realtime backend key configuration.",
            status=status,
        )
    if status == 403:
        if is_firewall_page(body):
            return NegotiationFailure(
                code=FailureCode.NETWORK_BLOCKED,
                error=(
                    f"Network firewall is blocking access to {backend_url}. Please contact your "
                    "network administrator to whitelist this domain, or use a different network/VPN."
                ),
                status=status,
                details="A network security appliance is blocking access to the realtime backend.",
                suggestion=(
                    f"Contact your IT administrator to whitelist {backend_url}, "
                    "or try using a different network connection."
                ),
            )
        return NegotiationFailure(
            code=FailureCode.FORBIDDEN,
            error="Access forbidden. Please check your API key permissions.",
            status=status,
        )
    if status == 429:
        return NegotiationFailure(
            code=FailureCode.RATE_LIMITED,
            error="Rate limit exceeded. Please try again later.",
            status=status,
        )
    if status >= 500:
        return NegotiationFailure(
            code=FailureCode.BACKEND_ERROR,
            error="Realtime backend service error. Please try again later.",
            status=status,
        )

    message = body.strip() if body and not is_html else "Failed to create voice session"
    return NegotiationFailure(code=FailureCode.UPSTREAM_ERROR, error=message, status=status)


def classify_network_failure(exc: BaseException, backend_url: str) -> NegotiationFailure:
    """
    Map a request that never produced a response to a failure.

    Certificate, DNS, refusal and timeout causes each get their own hint.
    """
    if isinstance(exc, aiohttp.ClientConnectorCertificateError) or isinstance(
        exc, ssl.SSLCertVerificationError
    ):
        return NegotiationFailure(
            code=FailureCode.CERTIFICATE_ERROR,
            error="SSL certificate verification failed",
            details=str(exc),
            suggestion=(
                "Verify the system clock and CA bundle. ALLOW_UNVERIFIED_SSL=true bypasses "
                "verification for troubleshooting only."
            ),
        )

    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return NegotiationFailure(
            code=FailureCode.TIMEOUT,
            error=f"Connection timeout to {backend_url}",
            status=504,
            details=str(exc) or None,
            suggestion=(
                f"Check firewall rules allow outbound HTTPS to {backend_url}. "
                "Consider increasing the timeout if the network is slow."
            ),
        )

    if isinstance(exc, aiohttp.ClientConnectorError):
        os_error = exc.os_error
        if isinstance(os_error, socket.gaierror):
            return NegotiationFailure(
                code=FailureCode.DNS_FAILURE,
                error=f"DNS resolution failed for {backend_url}",
                details=str(exc),
                suggestion="Ensure the host can resolve DNS and that resolvers are configured correctly.",
            )
        if isinstance(os_error, ConnectionRefusedError):
            return NegotiationFailure(
                code=FailureCode.CONNECTION_REFUSED,
                error=f"Connection refused to {backend_url}",
                details=str(exc),
                suggestion=(
                    f"Check outbound HTTPS (port 443) to {backend_url} is allowed and that "
                    "the realtime service is operational."
                ),
            )

    return NegotiationFailure(
        code=FailureCode.NETWORK_ERROR,
        error=f"Failed to connect to realtime backend: {exc}",
        details=type(exc).__name__,
    )
