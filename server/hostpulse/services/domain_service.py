"""Resolution of the agent machine's own Active Directory domain.

The domain is resolved once at startup and only read afterwards; node
pollers use it to decide whether a host's DNS name needs qualifying.
"""
from __future__ import annotations

import logging
import socket
import threading
from typing import Optional

from dns import resolver as dns_resolver
from dns.exception import DNSException

from ..core.config import settings

logger = logging.getLogger(__name__)


def _domain_from_fqdn(fqdn: Optional[str]) -> Optional[str]:
    if not fqdn or "." not in fqdn:
        return None
    _, _, domain = fqdn.strip().rstrip(".").partition(".")
    return domain.lower() or None


def _has_domain_controllers(domain: str) -> bool:
    """Return True when the domain publishes AD domain controller SRV records."""

    srv_record = f"_ldap._tcp.dc._msdcs.{domain}"
    try:
        answers = dns_resolver.resolve(srv_record, "SRV")
    except DNSException as exc:
        logger.debug("No domain controller SRV records for %s: %s", domain, exc)
        return False
    return any(getattr(rdata, "target", None) for rdata in answers)


class DomainService:
    """Resolve the agent machine's domain once and cache the answer."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resolved = False
        self._domain: Optional[str] = None

    def get_computer_domain_name(self) -> Optional[str]:
        """Return the machine's domain, or ``None`` when not domain-joined."""

        if self._resolved:
            return self._domain

        with self._lock:
            if not self._resolved:
                self._domain = self._resolve()
                self._resolved = True
        return self._domain

    def _resolve(self) -> Optional[str]:
        override = (settings.machine_domain or "").strip()
        if override:
            logger.info("Using configured machine domain %s", override)
            return override.lower()

        if not settings.domain_discovery_enabled:
            logger.debug("Machine domain discovery disabled")
            return None

        candidate = _domain_from_fqdn(socket.getfqdn())
        if candidate is None:
            logger.info("Machine is not domain-joined; host names will not be qualified")
            return None

        if not _has_domain_controllers(candidate):
            logger.info(
                "Domain %s has no discoverable domain controllers; treating machine as not domain-joined",
                candidate,
            )
            return None

        logger.info("Resolved machine domain %s", candidate)
        return candidate


domain_service = DomainService()
