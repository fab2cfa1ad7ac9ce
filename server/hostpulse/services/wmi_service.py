"""CIM query service executing WQL on monitored hosts over WinRM (PSRP)."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import contextmanager
from time import perf_counter
from typing import Any, Iterator, List, Optional, Sequence, Type, TypeVar

from pydantic import ValidationError
from pypsrp.exceptions import (
    AuthenticationError,
    WinRMError,
    WinRMTransportError as PyWinRMTransportError,
)
from pypsrp.powershell import PowerShell, RunspacePool
from pypsrp.wsman import WSMan

from ..core.config import settings
from ..core.query_rows import QueryRow

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=QueryRow)

DEFAULT_NAMESPACE = "root\\cimv2"


class WmiServiceError(RuntimeError):
    """Base exception for query service failures."""


class QueryTransportError(WmiServiceError):
    """Raised when a query cannot be executed or its result cannot be read.

    Connectivity, permission and protocol failures all surface here, as do
    queries against classes the host does not provide.
    """

    def __init__(self, endpoint: str, message: str):
        super().__init__(f"{endpoint}: {message}")
        self.endpoint = endpoint
        self.detail = message


class QueryAuthenticationError(QueryTransportError):
    """Raised when authentication to a host fails."""


def _ps_quote(value: str) -> str:
    """Return a single-quoted PowerShell literal."""

    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def build_query_script(
    statement: str, namespace: Optional[str], properties: Sequence[str]
) -> str:
    """Wrap a WQL statement in PowerShell returning the selected properties as JSON."""

    select = ",".join(properties) if properties else "*"
    lines = [
        "$ErrorActionPreference = 'Stop'",
        "$ProgressPreference = 'SilentlyContinue'",
        "$rows = @(Get-CimInstance -Namespace {ns} -Query {query} | Select-Object -Property {select})".format(
            ns=_ps_quote(namespace or DEFAULT_NAMESPACE),
            query=_ps_quote(" ".join(statement.split())),
            select=select,
        ),
        "ConvertTo-Json -InputObject $rows -Depth 3 -Compress",
    ]
    return "\n".join(lines)


def decode_rows(endpoint: str, payload: str, row_type: Type[R]) -> List[R]:
    """Decode the JSON emitted by :func:`build_query_script` into typed rows.

    Rows that fail validation are dropped; an unparsable document is a
    protocol failure.
    """

    text = payload.strip()
    if not text:
        return []

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise QueryTransportError(endpoint, f"Unparsable query output: {exc}") from exc

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise QueryTransportError(
            endpoint, f"Unexpected query output type {type(data).__name__}"
        )

    rows: List[R] = []
    for item in data:
        if not isinstance(item, dict):
            logger.debug("Skipping non-object %s row from %s", row_type.__name__, endpoint)
            continue
        try:
            rows.append(row_type.model_validate(item))
        except ValidationError as exc:
            logger.debug(
                "Skipping malformed %s row from %s: %s",
                row_type.__name__,
                endpoint,
                exc.errors(include_url=False),
            )
    return rows


class WmiQueryService:
    """Run CIM queries against hosts, one WinRM session per query."""

    def __init__(self, max_concurrency: Optional[int] = None) -> None:
        self._max_concurrency = max(1, max_concurrency or settings.max_winrm_connections)
        self._semaphore: Optional[asyncio.Semaphore] = None

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Created lazily so it binds to the running loop
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrency)
        return self._semaphore

    async def query(
        self,
        endpoint: str,
        statement: str,
        row_type: Type[R],
        namespace: Optional[str] = None,
    ) -> List[R]:
        """Execute ``statement`` on ``endpoint`` and decode every row."""

        async with self._get_semaphore():
            payload = await asyncio.to_thread(
                self._execute, endpoint, statement, namespace, row_type.properties()
            )
        return decode_rows(endpoint, payload, row_type)

    async def query_first(
        self,
        endpoint: str,
        statement: str,
        row_type: Type[R],
        namespace: Optional[str] = None,
    ) -> Optional[R]:
        """Execute ``statement`` and return the first row, if any."""

        rows = await self.query(endpoint, statement, row_type, namespace)
        return rows[0] if rows else None

    def _execute(
        self,
        endpoint: str,
        statement: str,
        namespace: Optional[str],
        properties: Sequence[str],
    ) -> str:
        """Run the query script synchronously and return its JSON output."""

        script = build_query_script(statement, namespace, properties)
        logger.debug(
            "Executing query on %s (namespace=%s): %s",
            endpoint,
            namespace or DEFAULT_NAMESPACE,
            " ".join(statement.split()),
        )

        start_time = perf_counter()
        with self._session(endpoint) as pool:
            ps = PowerShell(pool)
            ps.add_script(script)
            try:
                output = ps.invoke()
            except AuthenticationError as exc:  # pragma: no cover - network heavy
                logger.error("Authentication failure while querying %s: %s", endpoint, exc)
                raise QueryAuthenticationError(endpoint, str(exc)) from exc
            except (PyWinRMTransportError, WinRMError) as exc:
                logger.error("Query execution failed on %s: %s", endpoint, exc)
                raise QueryTransportError(endpoint, str(exc)) from exc
            except OSError as exc:
                # requests timeouts and connection resets derive from OSError
                logger.error("Connection to %s failed during query: %s", endpoint, exc)
                raise QueryTransportError(endpoint, str(exc)) from exc

            if ps.had_errors:
                messages = [str(record) for record in ps.streams.error] or ["unknown error"]
                raise QueryTransportError(endpoint, "; ".join(messages))

        logger.debug(
            "Query on %s completed in %.2fs", endpoint, perf_counter() - start_time
        )
        return "".join(str(item) for item in (output or []) if item is not None)

    @contextmanager
    def _session(self, endpoint: str) -> Iterator[RunspacePool]:
        """Yield an opened runspace pool for the target host."""

        wsman = self._create_session(endpoint)
        pool = self._open_runspace_pool(endpoint, wsman)
        try:
            yield pool
        finally:
            try:
                pool.close()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Failed to close runspace pool cleanly", exc_info=True)
            finally:
                self._dispose_session(wsman)

    def _create_session(self, endpoint: str) -> WSMan:
        """Create a new WSMan session using configured credentials."""

        connection_timeout = int(max(1.0, float(settings.winrm_connection_timeout)))
        operation_timeout = int(max(1.0, float(settings.winrm_operation_timeout)))
        read_timeout = int(max(1.0, float(settings.winrm_read_timeout)))
        # WSMan requires the read timeout to exceed the operation timeout
        read_timeout = max(read_timeout, operation_timeout + 1)

        try:
            session = WSMan(
                endpoint,
                port=settings.winrm_port,
                username=settings.winrm_username,
                password=settings.winrm_password,
                auth=settings.winrm_auth,
                ssl=settings.winrm_use_ssl,
                cert_validation=settings.winrm_cert_validation,
                connection_timeout=connection_timeout,
                operation_timeout=operation_timeout,
                read_timeout=read_timeout,
            )
        except AuthenticationError as exc:  # pragma: no cover - network heavy
            logger.error("Authentication failed while connecting to %s: %s", endpoint, exc)
            raise QueryAuthenticationError(endpoint, str(exc)) from exc
        except (PyWinRMTransportError, WinRMError) as exc:  # pragma: no cover - network heavy
            logger.error("Failed to create WSMan session to %s: %s", endpoint, exc)
            raise QueryTransportError(endpoint, str(exc)) from exc

        return session

    def _open_runspace_pool(self, endpoint: str, wsman: WSMan) -> RunspacePool:
        """Open a runspace pool and translate connection errors."""

        pool = RunspacePool(wsman)
        try:
            pool.open()
        except AuthenticationError as exc:
            self._dispose_session(wsman)
            raise QueryAuthenticationError(endpoint, str(exc)) from exc
        except (PyWinRMTransportError, WinRMError) as exc:
            self._dispose_session(wsman)
            raise QueryTransportError(endpoint, str(exc)) from exc
        except OSError as exc:
            # requests connection errors derive from OSError
            self._dispose_session(wsman)
            raise QueryTransportError(endpoint, str(exc)) from exc
        return pool

    def _dispose_session(self, session: Any) -> None:
        """Attempt to close transport resources for a WSMan session."""

        closer = getattr(session, "close", None)
        if callable(closer):
            try:
                closer()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Failed to close WSMan session cleanly", exc_info=True)


# Global query service instance
wmi_service = WmiQueryService()

__all__ = [
    "DEFAULT_NAMESPACE",
    "QueryAuthenticationError",
    "QueryTransportError",
    "WmiQueryService",
    "WmiServiceError",
    "build_query_script",
    "decode_rows",
    "wmi_service",
]
