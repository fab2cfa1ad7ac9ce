"""HostPulse: inventory and performance poller for Windows hosts."""
