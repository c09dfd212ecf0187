"""Service gateway (svcgw).

Single-host supervisor and reverse proxy that:
 - starts backend services in dependency order
 - restarts failed backends according to their restart policy
 - routes external traffic to backends by host/path
 - keeps backends on an internal network, reachable only through the gateway

The implementation is intentionally small so it can be audited and explained.
"""
