from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from fastapi.routing import APIRoute
from starlette.requests import Request


current_endpoint: ContextVar[str] = ContextVar('current_endpoint', default='background')


@contextmanager
def endpoint_label(label: str) -> Iterator[None]:
    token = current_endpoint.set(label)
    try:
        yield
    finally:
        current_endpoint.reset(token)


class EndpointNameRoute(APIRoute):
    """Tags every request with `METHOD /path` so slow-query logs can name the caller."""

    def get_route_handler(self):
        original_handler = super().get_route_handler()

        async def custom_handler(request: Request):
            with endpoint_label(f"{request.method} {self.path}"):
                return await original_handler(request)

        return custom_handler
