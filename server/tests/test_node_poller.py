"""Tests for the per-node inventory and statistics poll cycles."""

import asyncio
import re
from datetime import datetime, timezone
from ipaddress import ip_interface

import pytest

from conftest import FakeQueryService, windows_host_responses
from hostpulse.core.history import (
    CPU_STREAM,
    MEMORY_STREAM,
    NETWORK_COMBINED_STREAM,
    VOLUME_COMBINED_STREAM,
    network_stream,
    volume_stream,
)
from hostpulse.core.models import Node, NodeStatus, PollCycleState
from hostpulse.services.node_poller import (
    NETWORK_ADAPTER_PERF_TABLE,
    NETWORK_INTERFACE_PERF_TABLE,
    NodePoller,
    network_perf_query,
)
from hostpulse.services.wmi_service import QueryTransportError

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
EPOCH = int(NOW.timestamp())
GIB = 1024 ** 3


def make_poller(service, **kwargs):
    node = Node.for_endpoint("web01", history_capacity=16)
    kwargs.setdefault("machine_domain", "lab.example.com")
    return NodePoller(node, service, clock=lambda: NOW, **kwargs)


def test_network_perf_query_table_selection():
    assert NETWORK_ADAPTER_PERF_TABLE in network_perf_query(True)
    assert NETWORK_INTERFACE_PERF_TABLE in network_perf_query(False)


@pytest.mark.anyio("asyncio")
async def test_inventory_poll_populates_node(fake_query_service):
    poller = make_poller(fake_query_service)

    node = await poller.poll_node_info()

    assert node.status is NodeStatus.ACTIVE
    assert node.error is None
    assert node.last_sync == NOW
    assert node.name == "web01.corp.example.com"
    assert node.manufacturer == "Contoso"
    assert node.model == "R740"
    assert node.kernel_version == "10.0.20348"
    assert node.machine_type == "Microsoft Windows Server 2022 Standard 10.0.20348"
    assert node.last_boot == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert node.total_memory == 16 * GIB
    assert node.memory_used == 12 * GIB

    assert node.is_vm_host is False
    assert node.can_query_adapter_utilization is True
    assert node.can_query_teaming_information is False

    primary = node.get_interface("1")
    assert primary.name == "Intel(R) Ethernet Controller X710"
    assert primary.caption == "Ethernet"
    assert primary.dhcp_enabled is False
    assert primary.ips == [ip_interface("10.0.0.5/24"), ip_interface("fe80::1/64")]
    assert node.get_interface("2").ips == [ip_interface("192.168.10.5/24")]

    volume = node.get_volume("C:")
    assert volume.percent_used == 75
    assert volume.caption == "ABCD1234"


@pytest.mark.anyio("asyncio")
async def test_same_domain_host_name_is_not_qualified(fake_query_service):
    poller = make_poller(fake_query_service, machine_domain="corp.example.com")

    node = await poller.poll_node_info()

    assert node.name == "web01"


@pytest.mark.anyio("asyncio")
async def test_unknown_machine_domain_leaves_host_name_short(fake_query_service):
    poller = make_poller(fake_query_service, machine_domain=None)

    node = await poller.poll_node_info()

    assert node.name == "web01"


@pytest.mark.anyio("asyncio")
async def test_repeated_inventory_polls_keep_entities(fake_query_service):
    poller = make_poller(fake_query_service)

    await poller.poll_node_info()
    interfaces = list(poller.node.interfaces)
    await poller.poll_node_info()

    assert len(poller.node.interfaces) == 2
    assert all(a is b for a, b in zip(interfaces, poller.node.interfaces))
    assert len(poller.node.volumes) == 1


@pytest.mark.anyio("asyncio")
async def test_stats_poll_records_history(fake_query_service):
    poller = make_poller(fake_query_service)
    await poller.poll_node_info()

    node = await poller.poll_stats()
    history = node.history

    assert node.status is NodeStatus.ACTIVE
    assert node.cpu_load == 37
    assert history.latest(CPU_STREAM).avg_load == 37
    assert history.latest(MEMORY_STREAM).avg_memory_used == 8 * GIB
    assert node.memory_used == 8 * GIB

    first = history.latest(network_stream("Intel(R) Ethernet Controller X710"))
    assert first.epoch == EPOCH
    assert first.in_avg_bps == 100
    assert node.get_interface("2").in_pps == 6

    combined = history.latest(NETWORK_COMBINED_STREAM)
    assert combined.epoch == EPOCH
    assert combined.in_avg_bps == 300
    assert combined.out_avg_bps == 30

    assert history.latest(volume_stream("C:")).read_avg_bps == 4096
    assert history.latest(VOLUME_COMBINED_STREAM).write_avg_bps == 2048
    assert not any("isatap" in stream for stream in history.streams())


@pytest.mark.anyio("asyncio")
async def test_team_members_are_excluded_from_combined_network(fake_query_service):
    fake_query_service.responses["MSFT_NetLbfoTeam"] = [{"InstanceID": "{1}", "Name": "Ethernet"}]
    fake_query_service.responses["MSFT_NetLbfoTeamMember"] = [
        {"InstanceID": "{2}", "Name": "Intel(R) Ethernet Controller X710 #2", "Team": "Ethernet"}
    ]
    poller = make_poller(fake_query_service)

    await poller.poll_node_info()
    await poller.poll_stats()

    assert poller.node.can_query_teaming_information is True
    assert poller.node.get_interface("1").team_members == ["2"]
    assert poller.node.history.latest(NETWORK_COMBINED_STREAM).in_avg_bps == 100


@pytest.mark.anyio("asyncio")
async def test_primary_interface_pattern_selects_combined_network(fake_query_service):
    poller = make_poller(
        fake_query_service, primary_interface_pattern=re.compile("backup", re.IGNORECASE)
    )

    await poller.poll_node_info()
    await poller.poll_stats()

    assert poller.node.history.latest(NETWORK_COMBINED_STREAM).in_avg_bps == 200


@pytest.mark.anyio("asyncio")
async def test_vm_host_uses_hypervisor_cpu_counter(fake_query_service):
    fake_query_service.responses["Win32_OptionalFeature"] = [{"Name": "Microsoft-Hyper-V"}]
    fake_query_service.responses[
        "Win32_PerfFormattedData_HvStats_HyperVHypervisorLogicalProcessor"
    ] = [{"PercentTotalRunTime": 64}]
    poller = make_poller(fake_query_service)

    await poller.poll_node_info()
    await poller.poll_stats()

    assert poller.node.is_vm_host is True
    assert poller.node.cpu_load == 64
    assert "Win32_PerfFormattedData_PerfOS_Processor" not in fake_query_service.tables_queried()


@pytest.mark.anyio("asyncio")
async def test_interface_counters_used_without_adapter_table():
    responses = windows_host_responses()
    rows = responses.pop("Win32_PerfFormattedData_Tcpip_NetworkAdapter")
    responses["Win32_PerfFormattedData_Tcpip_NetworkInterface"] = rows
    service = FakeQueryService(responses)
    poller = make_poller(service)

    await poller.poll_node_info()
    await poller.poll_stats()

    assert poller.node.can_query_adapter_utilization is False
    assert poller.node.status is NodeStatus.ACTIVE
    assert poller.node.history.latest(NETWORK_COMBINED_STREAM).in_avg_bps == 300


@pytest.mark.anyio("asyncio")
async def test_capabilities_are_recomputed_every_inventory_poll(fake_query_service):
    poller = make_poller(fake_query_service)

    await poller.poll_node_info()
    assert poller.node.can_query_teaming_information is False

    fake_query_service.responses["MSFT_NetLbfoTeam"] = []
    fake_query_service.responses["MSFT_NetLbfoTeamMember"] = []
    await poller.poll_node_info()
    assert poller.node.can_query_teaming_information is True

    del fake_query_service.responses["MSFT_NetLbfoTeamMember"]
    await poller.poll_node_info()
    assert poller.node.can_query_teaming_information is False


@pytest.mark.anyio("asyncio")
async def test_transport_failure_marks_unreachable_and_keeps_partial_updates(fake_query_service):
    fake_query_service.responses["Win32_NetworkAdapterConfiguration"] = QueryTransportError(
        "web01", "The WinRM client cannot process the request"
    )
    poller = make_poller(fake_query_service)

    node = await poller.poll_node_info()

    assert node.status is NodeStatus.UNREACHABLE
    assert "cannot process the request" in node.error
    assert node.last_sync is None
    assert {iface.id for iface in node.interfaces} == {"1", "2"}
    assert all(iface.ips == [] for iface in node.interfaces)
    assert node.get_volume("C:") is not None
    assert poller.info_state is PollCycleState.IDLE


@pytest.mark.anyio("asyncio")
async def test_unexpected_failure_marks_unknown(fake_query_service):
    fake_query_service.responses["Win32_LogicalDisk"] = RuntimeError("boom")
    poller = make_poller(fake_query_service)

    node = await poller.poll_node_info()

    assert node.status is NodeStatus.UNKNOWN
    assert node.error == "boom"


@pytest.mark.anyio("asyncio")
async def test_node_recovers_after_failure(fake_query_service):
    poller = make_poller(fake_query_service)
    healthy = fake_query_service.responses["Win32_LogicalDisk"]
    fake_query_service.responses["Win32_LogicalDisk"] = QueryTransportError("web01", "timeout")

    await poller.poll_node_info()
    assert poller.node.status is NodeStatus.UNREACHABLE

    fake_query_service.responses["Win32_LogicalDisk"] = healthy
    await poller.poll_node_info()
    assert poller.node.status is NodeStatus.ACTIVE
    assert poller.node.error is None


@pytest.mark.anyio("asyncio")
async def test_stats_failure_keeps_other_samples(fake_query_service):
    poller = make_poller(fake_query_service)
    await poller.poll_node_info()
    fake_query_service.responses[
        "Win32_PerfFormattedData_Tcpip_NetworkAdapter"
    ] = QueryTransportError("web01", "Access is denied")

    node = await poller.poll_stats()

    assert node.status is NodeStatus.UNREACHABLE
    assert node.history.latest(CPU_STREAM) is not None
    assert node.history.latest(MEMORY_STREAM) is not None
    assert node.history.latest(VOLUME_COMBINED_STREAM) is not None
    assert node.history.get(NETWORK_COMBINED_STREAM) == []


@pytest.mark.anyio("asyncio")
async def test_running_cycle_is_skipped(fake_query_service):
    poller = make_poller(fake_query_service)
    poller.info_state = PollCycleState.RUNNING
    poller.stats_state = PollCycleState.RUNNING

    await poller.poll_node_info()
    await poller.poll_stats()

    assert fake_query_service.calls == []
    assert poller.node.status is NodeStatus.UNKNOWN


@pytest.mark.anyio("asyncio")
async def test_host_domain_comparison_ignores_case(fake_query_service):
    fake_query_service.responses["Win32_ComputerSystem"][0]["Domain"] = "CORP.example.com"
    poller = make_poller(fake_query_service, machine_domain="corp.example.com")

    node = await poller.poll_node_info()

    assert node.name == "web01"


@pytest.mark.anyio("asyncio")
async def test_stats_during_inventory_keep_team_membership(fake_query_service):
    fake_query_service.responses["MSFT_NetLbfoTeam"] = [{"InstanceID": "{1}", "Name": "Ethernet"}]
    fake_query_service.responses["MSFT_NetLbfoTeamMember"] = [
        {"InstanceID": "{2}", "Name": "Intel(R) Ethernet Controller X710 #2", "Team": "Ethernet"}
    ]
    poller = make_poller(fake_query_service)
    await poller.poll_node_info()
    await poller.poll_stats()

    gate = asyncio.Event()
    fake_query_service.gates["MSFT_NetLbfoTeam"] = gate
    fake_query_service.calls.clear()
    inventory = asyncio.create_task(poller.poll_node_info())
    for _ in range(100):
        if "MSFT_NetLbfoTeam" in fake_query_service.tables_queried():
            break
        await asyncio.sleep(0)
    assert "MSFT_NetLbfoTeam" in fake_query_service.tables_queried()

    await poller.poll_stats()
    team = poller.node.get_interface("1")
    assert team.team_members == ["2"]
    assert team.ips == [ip_interface("10.0.0.5/24"), ip_interface("fe80::1/64")]

    gate.set()
    await inventory

    samples = poller.node.history.get(NETWORK_COMBINED_STREAM)
    assert [sample.in_avg_bps for sample in samples] == [100, 100]
    assert poller.node.status is NodeStatus.ACTIVE
