"""Shared rate limiter instances for use across route files."""

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from stocksync.core.config import settings

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


def get_terminal_or_ip(request: Request) -> str:
    """Rate limit sale posting per POS terminal when it identifies itself, else by IP."""
    terminal = request.headers.get("X-Terminal-Id", "").strip()
    if terminal:
        return f"terminal:{terminal}"
    return get_remote_address(request)


terminal_limiter = Limiter(key_func=get_terminal_or_ip, enabled=settings.rate_limit_enabled)
