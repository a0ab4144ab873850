"""
Pipeline stage contract.

A stage is an async callable `(request, call_next) -> response`. It may
return early (short-circuit), call `call_next` exactly once, and decorate
the response on the way out. Stages share per-request data through
`request.state` (the RouteRule is set as `request.state.route` before the
first stage runs).
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from starlette.requests import Request
from starlette.responses import Response

Next = Callable[[Request], Awaitable[Response]]


class Stage(ABC):
    name: str = "stage"

    @abstractmethod
    async def __call__(self, request: Request, call_next: Next) -> Response:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
