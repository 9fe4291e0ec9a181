"""App-server process supervision and JSON-RPC transport."""

from codex_gateway.appserver.correlator import PendingRequest, RequestCorrelator
from codex_gateway.appserver.events import SessionEvents
from codex_gateway.appserver.supervisor import AppServerSupervisor

__all__ = ["AppServerSupervisor", "PendingRequest", "RequestCorrelator", "SessionEvents"]
