from __future__ import annotations

from contextvars import ContextVar


current_endpoint: ContextVar[str] = ContextVar('current_endpoint', default='background')
current_request_id: ContextVar[str] = ContextVar('current_request_id', default='')
