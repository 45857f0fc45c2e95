"""Step-by-step connection diagnostics for setup screens."""

from __future__ import annotations

import re
from dataclasses import dataclass

from talentflow_connect.client import ClientFactory
from talentflow_connect.config_resolver import ConnectionConfig
from talentflow_connect.errors import ErrorKind
from talentflow_connect.health import HealthMonitor
from talentflow_connect.tokens import looks_like_signed_token

_ENDPOINT_PATTERN = re.compile(r"^https://[A-Za-z0-9.-]+(:\d+)?/?$")
INVALID_FORMAT_MESSAGE = "Invalid backend URL or credential format."
CLIENT_BUILD_FAILED_MESSAGE = "Could not create a backend client: {error}"


@dataclass(frozen=True)
class DiagnosticDetails:
    """Which stage of the connection path is known to work."""

    endpoint_format: bool = False
    credential_format: bool = False
    connection: bool = False
    authentication: bool = False
    permissions: bool = False


@dataclass(frozen=True)
class ConnectionDiagnostics:
    """Overall verdict plus per-stage details."""

    valid: bool
    details: DiagnosticDetails
    error: str | None


def endpoint_format_ok(endpoint: str | None) -> bool:
    return endpoint is not None and _ENDPOINT_PATTERN.match(endpoint) is not None


def credential_format_ok(credential: str | None) -> bool:
    return credential is not None and looks_like_signed_token(credential)


async def diagnose_connection(
    config: ConnectionConfig,
    monitor: HealthMonitor,
    client_factory: ClientFactory,
) -> ConnectionDiagnostics:
    """Validate formats locally, then classify a health check of ``config``.

    A client is built for the candidate endpoint and credential with
    ``client_factory`` and checked directly, so the verdict describes
    ``config`` even when it is not the active configuration. The check
    bypasses the monitor's cache and breaker. Nothing is built or probed
    when either format check fails.
    """
    endpoint, credential = config.endpoint, config.credential
    endpoint_ok = endpoint_format_ok(endpoint)
    credential_ok = credential_format_ok(credential)
    if endpoint is None or credential is None or not (endpoint_ok and credential_ok):
        return ConnectionDiagnostics(
            valid=False,
            details=DiagnosticDetails(
                endpoint_format=endpoint_ok,
                credential_format=credential_ok,
            ),
            error=INVALID_FORMAT_MESSAGE,
        )

    try:
        client = client_factory(endpoint, credential)
    except Exception as exc:
        return ConnectionDiagnostics(
            valid=False,
            details=DiagnosticDetails(True, True),
            error=CLIENT_BUILD_FAILED_MESSAGE.format(
                error=f"{exc.__class__.__name__}: {exc}"
            ),
        )

    result = await monitor.check_client(client)
    if result.healthy:
        return ConnectionDiagnostics(
            valid=True,
            details=DiagnosticDetails(True, True, True, True, True),
            error=None,
        )

    if result.kind == ErrorKind.CREDENTIAL_EXPIRED:
        details = DiagnosticDetails(True, True, connection=True)
    elif result.kind == ErrorKind.REJECTED:
        details = DiagnosticDetails(True, True, connection=True, authentication=True)
    else:
        details = DiagnosticDetails(True, True)
    return ConnectionDiagnostics(valid=False, details=details, error=result.error)
