"""Inventory and statistics poll cycles for a single monitored node."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Pattern

from ..core.config import settings
from ..core.history import (
    CPU_STREAM,
    MEMORY_STREAM,
    NETWORK_COMBINED_STREAM,
    VOLUME_COMBINED_STREAM,
    CombinedAccumulator,
    CPUUtilization,
    InterfaceUtilization,
    MemoryUtilization,
    VolumePerformanceUtilization,
    network_stream,
    volume_stream,
)
from ..core.models import Node, NodeStatus, PollCycleState
from ..core.naming import match_counter_instance
from ..core.query_rows import (
    AdapterConfigurationRow,
    ComputerSystemRow,
    DiskPerfRow,
    HypervisorProcessorPerfRow,
    LogicalDiskRow,
    MemoryPerfRow,
    NamedRow,
    NetworkAdapterRow,
    NetworkPerfRow,
    OperatingSystemRow,
    ProcessorPerfRow,
    TeamMemberRow,
    TeamRow,
)
from .capability_probe import STANDARD_CIMV2_NAMESPACE, CapabilitySession
from .reconciler import InterfaceReconciler, apply_volumes
from .wmi_service import QueryTransportError, WmiQueryService

logger = logging.getLogger(__name__)

COMPUTER_SYSTEM_QUERY = "SELECT DNSHostName, Domain, Manufacturer, Model FROM Win32_ComputerSystem"
OPERATING_SYSTEM_QUERY = (
    "SELECT Caption, LastBootUpTime, Version, FreePhysicalMemory, TotalVisibleMemorySize "
    "FROM Win32_OperatingSystem"
)
# 'AND PhysicalAdapter = True' fails on older Windows versions
NETWORK_ADAPTER_QUERY = (
    "SELECT Name, PNPDeviceID, DeviceID, NetConnectionID, Description, MACAddress, "
    "Speed, InterfaceIndex FROM Win32_NetworkAdapter WHERE NetConnectionStatus = 2"
)
TEAM_QUERY = "SELECT InstanceID, Name FROM MSFT_NetLbfoTeam"
TEAM_MEMBER_QUERY = "SELECT InstanceID, Name, Team FROM MSFT_NetLbfoTeamMember"
IP_CONFIGURATION_QUERY = (
    "SELECT InterfaceIndex, IPAddress, IPSubnet, DHCPEnabled "
    "FROM Win32_NetworkAdapterConfiguration WHERE IPEnabled = 'True'"
)
LOGICAL_DISK_QUERY = (
    "SELECT Caption, DeviceID, Description, FreeSpace, Name, Size, VolumeSerialNumber "
    "FROM Win32_LogicalDisk WHERE DriveType = 3"
)
PROCESSOR_QUERY = (
    "SELECT PercentProcessorTime FROM Win32_PerfFormattedData_PerfOS_Processor "
    "WHERE Name = '_Total'"
)
HYPERVISOR_PROCESSOR_QUERY = (
    "SELECT PercentTotalRunTime "
    "FROM Win32_PerfFormattedData_HvStats_HyperVHypervisorLogicalProcessor "
    "WHERE Name = '_Total'"
)
MEMORY_QUERY = "SELECT AvailableKBytes FROM Win32_PerfFormattedData_PerfOS_Memory"
NETWORK_ADAPTER_PERF_TABLE = "Win32_PerfFormattedData_Tcpip_NetworkAdapter"
NETWORK_INTERFACE_PERF_TABLE = "Win32_PerfFormattedData_Tcpip_NetworkInterface"
DISK_PERF_QUERY = (
    "SELECT Name, DiskReadBytesPersec, DiskWriteBytesPersec "
    "FROM Win32_PerfFormattedData_PerfDisk_LogicalDisk"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _wql_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def network_perf_query(use_adapter_table: bool) -> str:
    table = NETWORK_ADAPTER_PERF_TABLE if use_adapter_table else NETWORK_INTERFACE_PERF_TABLE
    return (
        "SELECT Name, BytesReceivedPersec, BytesSentPersec, PacketsReceivedPersec, "
        f"PacketsSentPersec FROM {table}"
    )


class NodePoller:
    """Run poll cycles for one node.

    Each cycle fans its sub-queries out concurrently. The first transport
    failure marks the node unreachable and ends the cycle; updates made by
    sub-queries before (or after) the failure are kept, and sibling
    sub-queries are not cancelled. Sub-queries of one cycle write disjoint
    parts of the node, so no locking is needed.
    """

    def __init__(
        self,
        node: Node,
        query_service: WmiQueryService,
        *,
        machine_domain: Optional[str] = None,
        primary_interface_pattern: Optional[Pattern[str]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.node = node
        self._query_service = query_service
        self._machine_domain = machine_domain
        self._primary_pattern = primary_interface_pattern
        self._clock = clock
        self.info_state = PollCycleState.IDLE
        self.stats_state = PollCycleState.IDLE

    @property
    def endpoint(self) -> str:
        return self.node.id

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def poll_node_info(self) -> Node:
        """Refresh capabilities, machine identity, interfaces and volumes."""

        if self.info_state is PollCycleState.RUNNING:
            logger.debug("Inventory poll already running for %s; skipping", self.endpoint)
            return self.node

        self.info_state = PollCycleState.RUNNING
        try:
            await self._run_cycle(
                "inventory",
                self._update_capabilities,
                lambda: asyncio.gather(
                    self._update_node_data(),
                    self._update_interfaces(),
                    self._update_volumes(),
                ),
            )
        finally:
            self.info_state = PollCycleState.IDLE
        return self.node

    async def poll_stats(self) -> Node:
        """Sample CPU, memory, network and disk throughput into history."""

        if self.stats_state is PollCycleState.RUNNING:
            logger.debug("Stats poll already running for %s; skipping", self.endpoint)
            return self.node

        self.stats_state = PollCycleState.RUNNING
        try:
            await self._run_cycle(
                "stats",
                lambda: asyncio.gather(
                    self._poll_cpu_utilization(),
                    self._poll_memory_utilization(),
                    self._poll_network_utilization(),
                    self._poll_volume_utilization(),
                ),
            )
        finally:
            self.stats_state = PollCycleState.IDLE
        return self.node

    async def _run_cycle(self, label: str, *stages: Callable[[], Awaitable[object]]) -> None:
        logger.debug("Starting %s poll for %s", label, self.endpoint)
        try:
            for stage in stages:
                await stage()
        except QueryTransportError as exc:
            logger.error("%s poll failed for %s: %s", label.capitalize(), self.endpoint, exc)
            self._set_status(NodeStatus.UNREACHABLE, error=str(exc))
            return
        except Exception as exc:
            logger.exception("Unexpected error during %s poll for %s", label, self.endpoint)
            self._set_status(NodeStatus.UNKNOWN, error=str(exc))
            return

        self.node.last_sync = self._clock()
        self._set_status(NodeStatus.ACTIVE)
        logger.debug("Completed %s poll for %s", label, self.endpoint)

    def _set_status(self, status: NodeStatus, *, error: Optional[str] = None) -> None:
        previous = self.node.status
        self.node.status = status
        self.node.error = error
        if previous != status:
            logger.info(
                "Node %s status changed from %s to %s", self.endpoint, previous.value, status.value
            )

    # ------------------------------------------------------------------
    # Inventory sub-queries
    # ------------------------------------------------------------------

    async def _update_capabilities(self) -> None:
        session = CapabilitySession(self._query_service)
        capabilities = await session.detect(self.endpoint)
        self.node.is_vm_host = capabilities.is_vm_host
        self.node.can_query_adapter_utilization = capabilities.can_query_adapter_utilization
        self.node.can_query_teaming_information = capabilities.can_query_teaming_information

    async def _update_node_data(self) -> None:
        machine, system = await asyncio.gather(
            self._query_service.query_first(self.endpoint, COMPUTER_SYSTEM_QUERY, ComputerSystemRow),
            self._query_service.query_first(self.endpoint, OPERATING_SYSTEM_QUERY, OperatingSystemRow),
        )

        if machine is not None:
            self.node.model = machine.model
            self.node.manufacturer = machine.manufacturer
            # Only qualify with the host's domain when ours is known and differs
            if (
                self._machine_domain
                and machine.domain
                and machine.domain.lower() != self._machine_domain.lower()
            ):
                self.node.name = f"{machine.dns_host_name}.{machine.domain}"
            else:
                self.node.name = machine.dns_host_name

        if system is not None:
            self.node.last_boot = system.last_boot_up_time
            if system.total_visible_memory_size is not None:
                self.node.total_memory = system.total_visible_memory_size * 1024
                if system.free_physical_memory is not None:
                    self.node.memory_used = (
                        self.node.total_memory - system.free_physical_memory * 1024
                    )
            self.node.kernel_version = system.version
            self.node.machine_type = " ".join(
                part for part in (system.caption, system.version) if part
            ) or None

    async def _update_interfaces(self) -> None:
        adapters = await self._query_service.query(
            self.endpoint, NETWORK_ADAPTER_QUERY, NetworkAdapterRow
        )
        device_names = await self._resolve_device_names(adapters)

        reconciler = InterfaceReconciler(self.node, self._clock())
        reconciler.apply_adapters(adapters, device_names)

        if self.node.can_query_teaming_information:
            teams = await self._query_service.query(
                self.endpoint, TEAM_QUERY, TeamRow, STANDARD_CIMV2_NAMESPACE
            )
            members = await self._query_service.query(
                self.endpoint, TEAM_MEMBER_QUERY, TeamMemberRow, STANDARD_CIMV2_NAMESPACE
            )
            reconciler.apply_teams(teams, members)

        ip_rows = await self._query_service.query(
            self.endpoint, IP_CONFIGURATION_QUERY, AdapterConfigurationRow
        )
        reconciler.apply_ip_configuration(ip_rows)
        reconciler.commit()

    async def _resolve_device_names(
        self, adapters: List[NetworkAdapterRow]
    ) -> Dict[str, Optional[str]]:
        """Look up the PnP device name of every adapter concurrently."""

        pnp_ids = sorted({row.pnp_device_id for row in adapters if row.pnp_device_id})
        rows = await asyncio.gather(
            *(
                self._query_service.query_first(
                    self.endpoint,
                    f"SELECT Name FROM Win32_PnPEntity WHERE DeviceId = '{_wql_escape(pnp_id)}'",
                    NamedRow,
                )
                for pnp_id in pnp_ids
            )
        )
        return {pnp_id: (row.name if row else None) for pnp_id, row in zip(pnp_ids, rows)}

    async def _update_volumes(self) -> None:
        rows = await self._query_service.query(self.endpoint, LOGICAL_DISK_QUERY, LogicalDiskRow)
        apply_volumes(self.node, rows, self._clock())

    # ------------------------------------------------------------------
    # Stats sub-queries
    # ------------------------------------------------------------------

    def _epoch(self) -> int:
        return int(self._clock().timestamp())

    async def _poll_cpu_utilization(self) -> None:
        if self.node.is_vm_host:
            row = await self._query_service.query_first(
                self.endpoint, HYPERVISOR_PROCESSOR_QUERY, HypervisorProcessorPerfRow
            )
            load = row.percent_total_run_time if row else None
        else:
            row = await self._query_service.query_first(
                self.endpoint, PROCESSOR_QUERY, ProcessorPerfRow
            )
            load = row.percent_processor_time if row else None

        if row is None:
            return

        self.node.cpu_load = load
        self.node.history.append(
            CPU_STREAM, CPUUtilization(epoch=self._epoch(), avg_load=load or 0)
        )

    async def _poll_memory_utilization(self) -> None:
        row = await self._query_service.query_first(self.endpoint, MEMORY_QUERY, MemoryPerfRow)
        if row is None or row.available_kbytes is None:
            return

        available = row.available_kbytes * 1024
        self.node.memory_used = (self.node.total_memory or 0) - available
        self.node.history.append(
            MEMORY_STREAM,
            MemoryUtilization(epoch=self._epoch(), avg_memory_used=self.node.memory_used),
        )

    async def _poll_network_utilization(self) -> None:
        query = network_perf_query(self.node.can_query_adapter_utilization)
        epoch = self._epoch()
        combined = CombinedAccumulator(
            epoch, ("in_avg_bps", "out_avg_bps"), InterfaceUtilization
        )
        primary_ids = {iface.id for iface in self.node.primary_interfaces(self._primary_pattern)}

        rows = await self._query_service.query(self.endpoint, query, NetworkPerfRow)
        for row in rows:
            iface = match_counter_instance(row.name, self.node.interfaces)
            if iface is None:
                continue

            iface.in_bps = row.bytes_received_persec
            iface.out_bps = row.bytes_sent_persec
            iface.in_pps = row.packets_received_persec
            iface.out_pps = row.packets_sent_persec

            sample = InterfaceUtilization(
                epoch=epoch,
                in_avg_bps=iface.in_bps or 0,
                out_avg_bps=iface.out_bps or 0,
            )
            self.node.history.append(network_stream(iface.name), sample)
            if iface.id in primary_ids:
                combined.add(sample)

        combined.commit(self.node.history, NETWORK_COMBINED_STREAM)

    async def _poll_volume_utilization(self) -> None:
        epoch = self._epoch()
        combined = CombinedAccumulator(
            epoch, ("read_avg_bps", "write_avg_bps"), VolumePerformanceUtilization
        )

        rows = await self._query_service.query(self.endpoint, DISK_PERF_QUERY, DiskPerfRow)
        for row in rows:
            volume = match_counter_instance(row.name, self.node.volumes)
            if volume is None:
                continue

            volume.read_bps = row.disk_read_bytes_persec
            volume.write_bps = row.disk_write_bytes_persec

            sample = VolumePerformanceUtilization(
                epoch=epoch,
                read_avg_bps=volume.read_bps or 0,
                write_avg_bps=volume.write_bps or 0,
            )
            self.node.history.append(volume_stream(volume.name), sample)
            # Every volume counts toward the combined disk stream
            combined.add(sample)

        combined.commit(self.node.history, VOLUME_COMBINED_STREAM)


def build_poller(
    node: Node,
    query_service: WmiQueryService,
    machine_domain: Optional[str] = None,
) -> NodePoller:
    """Create a poller configured from application settings."""

    return NodePoller(
        node,
        query_service,
        machine_domain=machine_domain,
        primary_interface_pattern=settings.get_primary_interface_regex(),
    )
