"""LAN agent: reachability probes and vendor telemetry for targets behind NAT."""

__version__ = "0.1.0"
