"""JSON-file persistence for AgentC2 records."""

from agentc2.storage.json_store import Database, JsonCollection

__all__ = ["Database", "JsonCollection"]
