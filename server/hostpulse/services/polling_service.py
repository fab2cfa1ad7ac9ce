"""Background scheduling of node poll cycles."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.config import settings
from ..core.models import Node, NodeStatus
from .domain_service import domain_service
from .node_poller import NodePoller, build_poller
from .wmi_service import WmiQueryService, wmi_service

logger = logging.getLogger(__name__)


class NodePollingService:
    """Own one Node per configured endpoint and keep it polled.

    Every node runs two independent loops: inventory on
    ``node_info_poll_interval`` and statistics on ``node_stats_poll_interval``.
    Nodes share no mutable state apart from the query service's connection
    limit.
    """

    def __init__(self, query_service: Optional[WmiQueryService] = None):
        self._query_service = query_service or wmi_service
        self.nodes: Dict[str, Node] = {}
        self._pollers: Dict[str, NodePoller] = {}
        self._tasks: List[asyncio.Task] = []
        self._machine_domain: Optional[str] = None
        self._started = False

    async def start(self) -> None:
        """Create nodes for configured hosts and start their poll loops."""

        if self._started:
            logger.debug("Node polling already running; skipping duplicate start")
            return

        logger.info("Starting node polling service")
        self._machine_domain = await asyncio.to_thread(domain_service.get_computer_domain_name)

        hosts = settings.get_monitored_hosts_list()
        if not hosts:
            logger.warning("No monitored hosts configured")

        for endpoint in hosts:
            self.add_node(endpoint)

        loop = asyncio.get_running_loop()
        for endpoint, poller in self._pollers.items():
            self._tasks.append(
                loop.create_task(
                    self._poll_loop(poller.poll_node_info, settings.node_info_poll_interval),
                    name=f"node-info-{endpoint}",
                )
            )
            self._tasks.append(
                loop.create_task(
                    self._poll_loop(poller.poll_stats, settings.node_stats_poll_interval),
                    name=f"node-stats-{endpoint}",
                )
            )

        self._started = True
        logger.info("Polling %d node(s)", len(self._pollers))

    async def stop(self) -> None:
        """Cancel all poll loops."""

        logger.info("Stopping node polling service")
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("Poll loop %s cancelled", task.get_name())
        self._tasks.clear()
        self._started = False

    def add_node(self, endpoint: str) -> Node:
        """Register ``endpoint``; returns the existing node if already known."""

        node = self.nodes.get(endpoint)
        if node is not None:
            return node

        node = Node.for_endpoint(endpoint, history_capacity=settings.history_capacity)
        self.nodes[endpoint] = node
        self._pollers[endpoint] = build_poller(node, self._query_service, self._machine_domain)
        return node

    def get_poller(self, endpoint: str) -> Optional[NodePoller]:
        return self._pollers.get(endpoint)

    async def _poll_loop(self, cycle: Callable[[], Awaitable[Node]], interval: float) -> None:
        """Run ``cycle`` immediately and then every ``interval`` seconds."""

        interval = max(1.0, float(interval))
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.exception("Poll cycle failed unexpectedly: %s", exc)

            remaining = interval - (loop.time() - started)
            await asyncio.sleep(max(0.0, remaining))

    def get_all_nodes(self) -> List[Node]:
        return list(self.nodes.values())

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    def get_metrics(self) -> Dict[str, Any]:
        nodes = self.get_all_nodes()
        return {
            "nodes": len(nodes),
            "active_nodes": sum(1 for node in nodes if node.status == NodeStatus.ACTIVE),
            "unreachable_nodes": sum(
                1 for node in nodes if node.status == NodeStatus.UNREACHABLE
            ),
        }


node_polling_service = NodePollingService()
