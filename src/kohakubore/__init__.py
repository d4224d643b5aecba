"""
KohakuBore: expose local TCP ports through a public relay server.

Modules
───────
  protocol  : control message codec and framed channel
  auth      : shared-secret challenge/response
  relay     : bidirectional byte relay
  heartbeat : client heartbeat sender, server liveness monitor
  server    : port allocator, control sessions, tunnel server
  client    : client control session
  cli       : typer CLI: local / server / version
"""

__version__ = "0.1.0"
