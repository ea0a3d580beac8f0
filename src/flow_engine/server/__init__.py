"""FastAPI server adapter for flow-engine.

Design intent:
- Keep workflow semantics in `flow_engine.engine.*`
- Keep server-specific concerns (routing, CORS, request models) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from flow_engine.server.app import create_app
