"""Data models for monitored nodes and their hardware."""
from datetime import datetime
from enum import Enum
from ipaddress import IPv4Interface, IPv6Interface
from typing import List, Optional, Pattern, Set, Union

from pydantic import BaseModel, Field, PrivateAttr

from .history import DEFAULT_HISTORY_CAPACITY, HistoryStore

IPNet = Union[IPv4Interface, IPv6Interface]


class NodeStatus(str, Enum):
    """Reachability of a node or one of its entities."""
    ACTIVE = "Active"
    UNREACHABLE = "Unreachable"
    UNKNOWN = "Unknown"


class PollCycleState(str, Enum):
    """Progress of one poll cycle."""
    IDLE = "idle"
    RUNNING = "running"


class Interface(BaseModel):
    """Network adapter observed on a node.

    ``id`` is the adapter DeviceID from inventory; ``name`` is the PnP device
    name, which performance counters report in normalized form.
    """
    id: str
    node_id: Optional[str] = None
    name: Optional[str] = None
    caption: Optional[str] = None
    full_name: Optional[str] = None
    physical_address: Optional[str] = None
    speed: Optional[int] = None
    dhcp_enabled: Optional[bool] = None
    ips: List[IPNet] = Field(default_factory=list)
    team_members: List[str] = Field(default_factory=list)
    in_bps: Optional[float] = None
    out_bps: Optional[float] = None
    in_pps: Optional[float] = None
    out_pps: Optional[float] = None
    status: NodeStatus = NodeStatus.UNKNOWN
    last_sync: Optional[datetime] = None


class Volume(BaseModel):
    """Fixed logical disk observed on a node."""
    id: str
    node_id: Optional[str] = None
    name: Optional[str] = None
    caption: Optional[str] = None
    description: Optional[str] = None
    type: str = "Fixed Disk"
    size: int = 0
    available: int = 0
    used: int = 0
    percent_used: int = 0
    read_bps: Optional[float] = None
    write_bps: Optional[float] = None
    status: NodeStatus = NodeStatus.UNKNOWN
    last_sync: Optional[datetime] = None


class Node(BaseModel):
    """A monitored host and everything collected about it."""

    id: str  # Endpoint used for queries
    name: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    machine_type: Optional[str] = None
    kernel_version: Optional[str] = None
    last_boot: Optional[datetime] = None
    total_memory: Optional[int] = None
    memory_used: Optional[int] = None
    cpu_load: Optional[float] = None
    status: NodeStatus = NodeStatus.UNKNOWN
    last_sync: Optional[datetime] = None
    error: Optional[str] = None
    # Capabilities, recomputed on every inventory poll
    is_vm_host: bool = False
    can_query_adapter_utilization: bool = False
    can_query_teaming_information: bool = False
    interfaces: List[Interface] = Field(default_factory=list)
    volumes: List[Volume] = Field(default_factory=list)

    _history: HistoryStore = PrivateAttr(default_factory=HistoryStore)

    @classmethod
    def for_endpoint(
        cls, endpoint: str, *, history_capacity: int = DEFAULT_HISTORY_CAPACITY
    ) -> "Node":
        node = cls(id=endpoint)
        node._history = HistoryStore(history_capacity)
        return node

    @property
    def history(self) -> HistoryStore:
        return self._history

    def get_interface(self, interface_id: str) -> Optional[Interface]:
        return next((i for i in self.interfaces if i.id == interface_id), None)

    def get_volume(self, volume_id: str) -> Optional[Volume]:
        return next((v for v in self.volumes if v.id == volume_id), None)

    def team_member_ids(self) -> Set[str]:
        return {member for iface in self.interfaces for member in iface.team_members}

    def primary_interfaces(self, pattern: Optional[Pattern[str]] = None) -> List[Interface]:
        """Interfaces whose traffic is summed into the combined network stream.

        With a pattern, interfaces whose name, caption or description match it.
        Without one, every interface that is not a team member, since member
        traffic is already reported on the team interface.
        """
        if pattern is not None:
            return [
                iface
                for iface in self.interfaces
                if any(
                    text and pattern.search(text)
                    for text in (iface.name, iface.caption, iface.full_name)
                )
            ]

        members = self.team_member_ids()
        return [iface for iface in self.interfaces if iface.id not in members]


class NodeSummary(BaseModel):
    """Shallow node representation for list views."""

    id: str
    name: Optional[str] = None
    status: NodeStatus = NodeStatus.UNKNOWN
    last_sync: Optional[datetime] = None
    interface_count: int = 0
    volume_count: int = 0


class HealthResponse(BaseModel):
    status: str
    nodes: int = 0
    active_nodes: int = 0
