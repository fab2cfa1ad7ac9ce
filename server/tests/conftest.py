"""Test configuration for server test suite."""

import asyncio
import json
import os
import re
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

# Keep tests away from real hosts and DNS
os.environ.setdefault("MONITORED_HOSTS", "")
os.environ.setdefault("DOMAIN_DISCOVERY_ENABLED", "false")

from hostpulse.services.wmi_service import QueryTransportError, decode_rows  # noqa: E402

_FROM_PATTERN = re.compile(r"\bFROM\s+(\w+)", re.IGNORECASE)

Response = Union[List[Dict[str, Any]], Exception, Callable[[str], List[Dict[str, Any]]]]


class FakeQueryService:
    """In-memory stand-in for the CIM query service.

    Responses are keyed by the class named in the statement's FROM clause and
    may be a list of raw rows, an exception to raise, or a callable receiving
    the statement. Rows pass through the same JSON decoding as real output.
    Classes without a response raise ``QueryTransportError`` the way hosts
    report unknown classes. A class listed in ``gates`` blocks until its
    event is set.
    """

    def __init__(self, responses: Optional[Dict[str, Response]] = None):
        self.responses: Dict[str, Response] = dict(responses or {})
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self.gates: Dict[str, asyncio.Event] = {}

    def tables_queried(self) -> List[str]:
        return [self._table(statement) for _, statement, _ in self.calls]

    @staticmethod
    def _table(statement: str) -> str:
        match = _FROM_PATTERN.search(statement)
        assert match, f"statement without FROM clause: {statement}"
        return match.group(1)

    async def query(self, endpoint, statement, row_type, namespace=None):
        self.calls.append((endpoint, statement, namespace))
        table = self._table(statement)
        gate = self.gates.get(table)
        if gate is not None:
            await gate.wait()
        if table not in self.responses:
            raise QueryTransportError(endpoint, f"Invalid class {table}")

        response = self.responses[table]
        if isinstance(response, Exception):
            raise response
        rows = response(statement) if callable(response) else response
        return decode_rows(endpoint, json.dumps(rows), row_type)

    async def query_first(self, endpoint, statement, row_type, namespace=None):
        rows = await self.query(endpoint, statement, row_type, namespace)
        return rows[0] if rows else None


def pnp_names(names: Dict[str, str]) -> Callable[[str], List[Dict[str, Any]]]:
    """Answer Win32_PnPEntity lookups from a PNPDeviceID -> Name map."""

    def _lookup(statement: str) -> List[Dict[str, Any]]:
        for pnp_id, name in names.items():
            escaped = pnp_id.replace("\\", "\\\\")
            if f"'{escaped}'" in statement:
                return [{"Name": name}]
        return []

    return _lookup


def windows_host_responses() -> Dict[str, Response]:
    """Responses describing a small non-teamed Windows server."""

    return {
        "Win32_ComputerSystem": [
            {
                "DNSHostName": "web01",
                "Domain": "corp.example.com",
                "Manufacturer": "Contoso",
                "Model": "R740",
            }
        ],
        "Win32_OperatingSystem": [
            {
                "Caption": "Microsoft Windows Server 2022 Standard",
                "LastBootUpTime": "/Date(1700000000000)/",
                "Version": "10.0.20348",
                "FreePhysicalMemory": 4 * 1024 * 1024,
                "TotalVisibleMemorySize": 16 * 1024 * 1024,
            }
        ],
        "Win32_OptionalFeature": [],
        "Win32_NetworkAdapter": [
            {
                "DeviceID": "1",
                "Name": "Intel(R) Ethernet #2",
                "PNPDeviceID": "PCI\\VEN_8086&DEV_1572\\0001",
                "NetConnectionID": "Ethernet",
                "Description": "Intel(R) Ethernet Controller X710",
                "MACAddress": "00:15:5D:00:00:01",
                "Speed": 10000000000,
                "InterfaceIndex": 11,
            },
            {
                "DeviceID": "2",
                "Name": "Intel(R) Ethernet #3",
                "PNPDeviceID": "PCI\\VEN_8086&DEV_1572\\0002",
                "NetConnectionID": "Backup",
                "Description": "Intel(R) Ethernet Controller X710 #2",
                "MACAddress": "00:15:5D:00:00:02",
                "Speed": 1000000000,
                "InterfaceIndex": 12,
            },
        ],
        "Win32_PnPEntity": pnp_names(
            {
                "PCI\\VEN_8086&DEV_1572\\0001": "Intel(R) Ethernet Controller X710",
                "PCI\\VEN_8086&DEV_1572\\0002": "Intel(R) Ethernet Controller X710 #2",
            }
        ),
        "Win32_NetworkAdapterConfiguration": [
            {
                "InterfaceIndex": 11,
                "IPAddress": ["10.0.0.5", "fe80::1"],
                "IPSubnet": ["255.255.255.0", "64"],
                "DHCPEnabled": False,
            },
            {
                "InterfaceIndex": 12,
                "IPAddress": ["192.168.10.5"],
                "IPSubnet": ["24"],
                "DHCPEnabled": True,
            },
        ],
        "Win32_LogicalDisk": [
            {
                "DeviceID": "C:",
                "Caption": "C:",
                "Description": "Local Fixed Disk",
                "FreeSpace": 25,
                "Name": "C:",
                "Size": 100,
                "VolumeSerialNumber": "ABCD1234",
            }
        ],
        "Win32_PerfFormattedData_Tcpip_NetworkAdapter": [
            {
                "Name": "Intel[R] Ethernet Controller X710",
                "BytesReceivedPersec": 100,
                "BytesSentPersec": 10,
                "PacketsReceivedPersec": 5,
                "PacketsSentPersec": 1,
            },
            {
                "Name": "Intel[R] Ethernet Controller X710 _2",
                "BytesReceivedPersec": 200,
                "BytesSentPersec": 20,
                "PacketsReceivedPersec": 6,
                "PacketsSentPersec": 2,
            },
            {
                "Name": "isatap.corp.example.com",
                "BytesReceivedPersec": 999,
                "BytesSentPersec": 999,
                "PacketsReceivedPersec": 9,
                "PacketsSentPersec": 9,
            },
        ],
        "Win32_PerfFormattedData_PerfOS_Processor": [{"PercentProcessorTime": 37}],
        "Win32_PerfFormattedData_PerfOS_Memory": [{"AvailableKBytes": 8 * 1024 * 1024}],
        "Win32_PerfFormattedData_PerfDisk_LogicalDisk": [
            {"Name": "C:", "DiskReadBytesPersec": 4096, "DiskWriteBytesPersec": 2048},
            {"Name": "_Total", "DiskReadBytesPersec": 4096, "DiskWriteBytesPersec": 2048},
        ],
    }


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_query_service():
    return FakeQueryService(windows_host_responses())
