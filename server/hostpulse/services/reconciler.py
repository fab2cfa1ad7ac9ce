"""Merge decoded inventory rows into a node's entity collections.

Entities are matched by identity key and updated in place. An entity, once
observed, keeps its object identity and its slot in the owning collection
for the life of the node; entities missing from a later poll are kept.

Rows that reference entities which do not exist (team rows naming an
unknown adapter, IP rows for an unknown interface index, unparsable
address/mask pairs) are skipped without affecting node status.
"""
from __future__ import annotations

import ipaddress
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, TypeVar

from ..core.models import IPNet, Interface, Node, NodeStatus, Volume
from ..core.query_rows import (
    AdapterConfigurationRow,
    LogicalDiskRow,
    NetworkAdapterRow,
    TeamMemberRow,
    TeamRow,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", Interface, Volume)


def upsert(collection: List[E], key: str, factory: Callable[[str], E]) -> E:
    """Return the entity with ``key`` from ``collection``, creating it if absent."""

    for entity in collection:
        if entity.id == key:
            return entity

    entity = factory(key)
    collection.append(entity)
    return entity


def parse_ip_prefix(address: Optional[str], subnet: Optional[str]) -> Optional[IPNet]:
    """Combine an address with a prefix length or a dotted mask.

    Returns ``None`` when the pair cannot be parsed either way.
    """
    if not address or not subnet:
        return None

    address = address.strip()
    subnet = subnet.strip()

    try:
        prefix_length = int(subnet)
    except ValueError:
        prefix_length = None

    if prefix_length is not None:
        try:
            return ipaddress.ip_interface(f"{address}/{prefix_length}")
        except ValueError:
            return None

    try:
        return ipaddress.ip_interface(f"{address}/{subnet}")
    except ValueError:
        return None


class InterfaceReconciler:
    """Apply one inventory pass of adapter, team and IP rows to a node.

    Stages must run in order: :meth:`apply_adapters` builds the
    ``InterfaceIndex`` map that :meth:`apply_ip_configuration` consumes.
    Team membership and IP prefixes are collected here and only replace the
    live lists on :meth:`commit`, so readers never see them half rebuilt.
    """

    def __init__(self, node: Node, synced_at: datetime) -> None:
        self.node = node
        self.synced_at = synced_at
        self._by_index: Dict[int, Interface] = {}
        self._team_members: Dict[str, List[str]] = {}
        self._ips: Dict[str, List[IPNet]] = {}

    def apply_adapters(
        self,
        rows: Iterable[NetworkAdapterRow],
        device_names: Optional[Dict[str, Optional[str]]] = None,
    ) -> List[Interface]:
        """Upsert one interface per adapter row.

        ``device_names`` maps ``PNPDeviceID`` to the PnP device name, which is
        the name performance counters are derived from.
        """
        device_names = device_names or {}
        seen: List[Interface] = []

        for row in rows:
            iface = upsert(
                self.node.interfaces,
                row.device_id,
                lambda key: Interface(id=key),
            )
            if row.interface_index is not None:
                self._by_index[row.interface_index] = iface

            iface.node_id = self.node.id
            iface.name = device_names.get(row.pnp_device_id) if row.pnp_device_id else None
            iface.caption = row.net_connection_id
            iface.full_name = row.description
            iface.physical_address = row.mac_address
            iface.speed = row.speed
            iface.status = NodeStatus.ACTIVE
            iface.last_sync = self.synced_at
            self._team_members[iface.id] = []
            self._ips[iface.id] = []
            seen.append(iface)

        return seen

    def apply_teams(
        self,
        team_rows: Iterable[TeamRow],
        member_rows: Iterable[TeamMemberRow],
    ) -> None:
        """Link team interfaces to their member interfaces.

        A team is the interface whose caption equals the team name; a member
        is the interface whose device name (or, failing that, caption) equals
        the member name.
        """
        teams: Dict[str, Interface] = {}
        for row in team_rows:
            team_iface = next(
                (i for i in self.node.interfaces if i.caption == row.name), None
            )
            if team_iface is None:
                logger.debug("No interface found for team %s on %s", row.name, self.node.id)
                continue
            teams[row.name] = team_iface

        for row in member_rows:
            team_iface = teams.get(row.team)
            if team_iface is None:
                continue

            member = next(
                (i for i in self.node.interfaces if i.name == row.name), None
            ) or next(
                (i for i in self.node.interfaces if i.caption == row.name), None
            )
            if member is None:
                logger.debug(
                    "No interface found for member %s of team %s on %s",
                    row.name,
                    row.team,
                    self.node.id,
                )
                continue

            members = self._team_members.setdefault(team_iface.id, [])
            if member.id not in members:
                members.append(member.id)

    def apply_ip_configuration(self, rows: Iterable[AdapterConfigurationRow]) -> None:
        """Attach IP prefixes and DHCP state to interfaces by interface index."""

        for row in rows:
            iface = self._by_index.get(row.interface_index)
            if iface is None:
                continue

            iface.dhcp_enabled = row.dhcp_enabled
            if not row.ip_address or not row.ip_subnet:
                continue

            for address, subnet in zip(row.ip_address, row.ip_subnet):
                prefix = parse_ip_prefix(address, subnet)
                if prefix is None:
                    logger.debug(
                        "Skipping unparsable address %r/%r on %s",
                        address,
                        subnet,
                        self.node.id,
                    )
                    continue
                ips = self._ips.setdefault(iface.id, [])
                if prefix not in ips:
                    ips.append(prefix)

    def commit(self) -> None:
        """Publish the collected team members and IP prefixes."""

        for iface in self.node.interfaces:
            if iface.id in self._team_members:
                iface.team_members = self._team_members[iface.id]
            if iface.id in self._ips:
                iface.ips = self._ips[iface.id]


def apply_volumes(
    node: Node, rows: Iterable[LogicalDiskRow], synced_at: datetime
) -> List[Volume]:
    """Upsert one volume per logical disk row."""

    seen: List[Volume] = []
    for row in rows:
        volume = upsert(node.volumes, row.device_id, lambda key: Volume(id=key))

        volume.node_id = node.id
        volume.name = row.name
        volume.caption = row.volume_serial_number
        volume.description = f"{row.name} - {row.description}"
        volume.type = "Fixed Disk"
        volume.size = row.size or 0
        volume.available = row.free_space or 0
        volume.used = volume.size - volume.available
        volume.percent_used = 100 * volume.used // volume.size if volume.size > 0 else 0
        volume.status = NodeStatus.ACTIVE
        volume.last_sync = synced_at
        seen.append(volume)

    return seen
