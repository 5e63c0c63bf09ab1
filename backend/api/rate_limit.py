"""
Per-session rate limiting for the chat routes.

Requests are counted per agent_id, so one chatty session cannot starve
the others sharing a client address. Routes without an agent_id fall
back to the remote address.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

import settings


def agent_key(request: Request) -> str:
    agent_id = request.path_params.get("agent_id")
    if agent_id:
        return f"agent:{agent_id}"
    return get_remote_address(request)


limiter = Limiter(key_func=agent_key, enabled=settings.RATE_LIMIT_ENABLED)
