"""
toolgate: a gateway between client applications and external tool servers.

Local servers are spawned and spoken to over stdin/stdout, remote ones over
MCP streaming transports. Sessions carry application context that an
action agent turns into candidate domain actions.
"""

__version__ = "0.1.0"
