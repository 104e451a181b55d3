"""Request context helpers for security events."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Request


def client_ip(request: Optional[Request]) -> Optional[str]:
    if request is None or request.client is None:
        return None
    return request.client.host


def request_context(request: Optional[Request]) -> Dict[str, Any]:
    """``ip_address`` / ``user_agent`` keyword arguments for recording an event about ``request``."""
    if request is None:
        return {"ip_address": None, "user_agent": None}
    return {
        "ip_address": client_ip(request),
        "user_agent": request.headers.get("user-agent"),
    }
