"""HTTP API."""

from agentc2.web.server import Services, build_services, create_app, run_server

__all__ = ["Services", "build_services", "create_app", "run_server"]
