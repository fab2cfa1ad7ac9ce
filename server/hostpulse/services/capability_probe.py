"""Trial-query detection of optional host capabilities."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ..core.query_rows import NamedRow
from .wmi_service import QueryTransportError, WmiQueryService

logger = logging.getLogger(__name__)

STANDARD_CIMV2_NAMESPACE = "root\\StandardCimv2"

VM_HOST_QUERY = (
    "SELECT Name FROM Win32_OptionalFeature "
    "WHERE (Name = 'Microsoft-Hyper-V' OR Name = 'Microsoft-Hyper-V-Hypervisor') "
    "AND InstallState = 1"
)
ADAPTER_UTILIZATION_QUERY = "SELECT Name FROM Win32_PerfFormattedData_Tcpip_NetworkAdapter"
TEAMING_QUERY = "SELECT Name FROM MSFT_NetLbfoTeamMember"


@dataclass(frozen=True)
class NodeCapabilities:
    """Optional query shapes supported by a host during one inventory poll."""

    is_vm_host: bool = False
    can_query_adapter_utilization: bool = False
    can_query_teaming_information: bool = False


class CapabilitySession:
    """Probe results for a single poll cycle.

    A trial query that succeeds means the capability is present; any
    transport failure means it is absent. Results are memoized for the
    lifetime of the session only, so a host that gains or loses a feature is
    picked up on the next cycle.
    """

    def __init__(self, query_service: WmiQueryService) -> None:
        self._query_service = query_service
        self._results: Dict[Tuple[str, str, Optional[str], bool], bool] = {}

    async def probe(
        self,
        endpoint: str,
        statement: str,
        namespace: Optional[str] = None,
        *,
        require_rows: bool = False,
    ) -> bool:
        """Return whether ``statement`` runs on ``endpoint``; never raises.

        With ``require_rows`` the query must also return at least one row.
        """
        key = (endpoint, statement, namespace, require_rows)
        cached = self._results.get(key)
        if cached is not None:
            return cached

        try:
            rows = await self._query_service.query(endpoint, statement, NamedRow, namespace)
        except QueryTransportError as exc:
            logger.debug("Capability probe on %s failed (%s): %s", endpoint, statement, exc)
            result = False
        else:
            result = bool(rows) if require_rows else True

        return self._results.setdefault(key, result)

    async def detect(self, endpoint: str) -> NodeCapabilities:
        """Probe every optional capability the pollers depend on."""

        is_vm_host, adapter_utilization, teaming = await asyncio.gather(
            self.probe(endpoint, VM_HOST_QUERY, require_rows=True),
            self.probe(endpoint, ADAPTER_UTILIZATION_QUERY),
            self.probe(endpoint, TEAMING_QUERY, STANDARD_CIMV2_NAMESPACE),
        )

        capabilities = NodeCapabilities(
            is_vm_host=is_vm_host,
            can_query_adapter_utilization=adapter_utilization,
            can_query_teaming_information=teaming,
        )
        logger.debug("Capabilities detected on %s: %s", endpoint, capabilities)
        return capabilities
