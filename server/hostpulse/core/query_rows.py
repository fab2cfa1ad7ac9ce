"""Typed row shapes for the CIM queries issued against monitored hosts.

Rows are decoded once at the query-service boundary; field aliases are the
CIM property names and are also used to build the ``Select-Object`` list so
only declared properties travel over the wire.
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

_JSON_DATE_PATTERN = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")
_DMTF_PATTERN = re.compile(
    r"^(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})\.(\d{6})([+-])(\d{3})$"
)


def parse_cim_datetime(value: Any) -> Optional[datetime]:
    """Parse the datetime encodings CIM values take on their way to JSON.

    Windows PowerShell renders ``DateTime`` as ``/Date(ms)/``, PowerShell 7 as
    ISO 8601, and raw WMI strings use the DMTF ``yyyymmddHHMMSS.mmmmmmsUUU``
    layout with the UTC offset in minutes.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, dict):
        # ConvertTo-Json -Depth > 1 on a DateTime yields {"value": "/Date(..)/", "DateTime": ...}
        value = value.get("value") or value.get("DateTime")
        return parse_cim_datetime(value)

    text = str(value).strip()

    match = _JSON_DATE_PATTERN.match(text)
    if match:
        millis = int(match.group(1))
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)

    match = _DMTF_PATTERN.match(text)
    if match:
        year, month, day, hour, minute, second, micro, sign, offset = match.groups()
        offset_minutes = int(offset) * (-1 if sign == "-" else 1)
        local = datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), int(micro),
            tzinfo=timezone(timedelta(minutes=offset_minutes)),
        )
        return local.astimezone(timezone.utc)

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"Unrecognised CIM datetime {text!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _as_string_list(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    return [str(value)]


class QueryRow(BaseModel):
    """Base class for decoded query rows."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    @classmethod
    def properties(cls) -> Tuple[str, ...]:
        """CIM property names requested for this row shape."""
        return tuple(
            field.alias or name for name, field in cls.model_fields.items()
        )


class NamedRow(QueryRow):
    """Minimal row used for trial queries and name lookups."""
    name: Optional[str] = Field(None, alias="Name")


class ComputerSystemRow(QueryRow):
    dns_host_name: Optional[str] = Field(None, alias="DNSHostName")
    domain: Optional[str] = Field(None, alias="Domain")
    manufacturer: Optional[str] = Field(None, alias="Manufacturer")
    model: Optional[str] = Field(None, alias="Model")


class OperatingSystemRow(QueryRow):
    caption: Optional[str] = Field(None, alias="Caption")
    last_boot_up_time: Optional[datetime] = Field(None, alias="LastBootUpTime")
    version: Optional[str] = Field(None, alias="Version")
    free_physical_memory: Optional[int] = Field(None, alias="FreePhysicalMemory")
    total_visible_memory_size: Optional[int] = Field(None, alias="TotalVisibleMemorySize")

    @field_validator("last_boot_up_time", mode="before")
    @classmethod
    def _parse_boot_time(cls, value: Any) -> Optional[datetime]:
        return parse_cim_datetime(value)


class NetworkAdapterRow(QueryRow):
    device_id: str = Field(..., alias="DeviceID")
    name: Optional[str] = Field(None, alias="Name")
    pnp_device_id: Optional[str] = Field(None, alias="PNPDeviceID")
    net_connection_id: Optional[str] = Field(None, alias="NetConnectionID")
    description: Optional[str] = Field(None, alias="Description")
    mac_address: Optional[str] = Field(None, alias="MACAddress")
    speed: Optional[int] = Field(None, alias="Speed")
    interface_index: Optional[int] = Field(None, alias="InterfaceIndex")

    @field_validator("device_id", mode="before")
    @classmethod
    def _stringify_device_id(cls, value: Any) -> Any:
        # DeviceID is a string in the schema but some providers emit integers
        return str(value) if isinstance(value, int) else value


class TeamRow(QueryRow):
    instance_id: Optional[str] = Field(None, alias="InstanceID")
    name: str = Field(..., alias="Name")


class TeamMemberRow(QueryRow):
    instance_id: Optional[str] = Field(None, alias="InstanceID")
    name: str = Field(..., alias="Name")
    team: str = Field(..., alias="Team")


class AdapterConfigurationRow(QueryRow):
    interface_index: int = Field(..., alias="InterfaceIndex")
    ip_address: Optional[List[str]] = Field(None, alias="IPAddress")
    ip_subnet: Optional[List[str]] = Field(None, alias="IPSubnet")
    dhcp_enabled: Optional[bool] = Field(None, alias="DHCPEnabled")

    @field_validator("ip_address", "ip_subnet", mode="before")
    @classmethod
    def _coerce_string_list(cls, value: Any) -> Optional[List[str]]:
        return _as_string_list(value)


class LogicalDiskRow(QueryRow):
    device_id: str = Field(..., alias="DeviceID")
    caption: Optional[str] = Field(None, alias="Caption")
    description: Optional[str] = Field(None, alias="Description")
    free_space: Optional[int] = Field(None, alias="FreeSpace")
    name: Optional[str] = Field(None, alias="Name")
    size: Optional[int] = Field(None, alias="Size")
    volume_serial_number: Optional[str] = Field(None, alias="VolumeSerialNumber")


class ProcessorPerfRow(QueryRow):
    percent_processor_time: Optional[float] = Field(None, alias="PercentProcessorTime")


class HypervisorProcessorPerfRow(QueryRow):
    percent_total_run_time: Optional[float] = Field(None, alias="PercentTotalRunTime")


class MemoryPerfRow(QueryRow):
    available_kbytes: Optional[int] = Field(None, alias="AvailableKBytes")


class NetworkPerfRow(QueryRow):
    name: Optional[str] = Field(None, alias="Name")
    bytes_received_persec: Optional[float] = Field(None, alias="BytesReceivedPersec")
    bytes_sent_persec: Optional[float] = Field(None, alias="BytesSentPersec")
    packets_received_persec: Optional[float] = Field(None, alias="PacketsReceivedPersec")
    packets_sent_persec: Optional[float] = Field(None, alias="PacketsSentPersec")


class DiskPerfRow(QueryRow):
    name: Optional[str] = Field(None, alias="Name")
    disk_read_bytes_persec: Optional[float] = Field(None, alias="DiskReadBytesPersec")
    disk_write_bytes_persec: Optional[float] = Field(None, alias="DiskWriteBytesPersec")
