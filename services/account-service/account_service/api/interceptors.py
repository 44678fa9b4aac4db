"""Per-call observation for RPC methods."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Awaitable, Callable, Iterator

from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.routing import APIRoute
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..domain.errors import AccountError
from ..telemetry.metrics import Metrics
from .status import INTERNAL_MESSAGE, RPCError, StatusCode, rpc_error_from_domain

logger = logging.getLogger(__name__)


@contextmanager
def observe_call(metrics: Metrics | None, method: str) -> Iterator[None]:
    """Track one RPC call and re-raise any failure as an :class:`RPCError`.

    The in-flight gauge is held for the duration of the block; on exit one
    request observation and one log line are emitted whatever the outcome.
    """
    start = time.perf_counter()
    code = StatusCode.ok
    if metrics is not None:
        metrics.inc_in_flight()
    try:
        yield
    except RPCError as exc:
        code = exc.code
        raise
    except AccountError as exc:
        rpc_error = rpc_error_from_domain(exc)
        code = rpc_error.code
        if code is StatusCode.internal:
            logger.error("%s failed: %r", method, exc, exc_info=exc)
        raise rpc_error from exc
    except RequestValidationError as exc:
        code = StatusCode.invalid_argument
        raise RPCError(code, "malformed request") from exc
    except StarletteHTTPException as exc:
        if 400 <= exc.status_code < 500:
            code = StatusCode.invalid_argument
            raise RPCError(code, "malformed request") from exc
        code = StatusCode.internal
        logger.error("%s failed: %s", method, exc.detail)
        raise RPCError(code, INTERNAL_MESSAGE) from exc
    except Exception as exc:
        code = StatusCode.internal
        logger.exception("%s failed with an unexpected error", method)
        raise RPCError(code, INTERNAL_MESSAGE) from exc
    except BaseException:
        code = StatusCode.internal
        raise
    finally:
        elapsed = time.perf_counter() - start
        if metrics is not None:
            metrics.dec_in_flight()
            metrics.observe_rpc(method, code.value, elapsed)
        duration_ms = int(elapsed * 1000)
        logger.info(
            "rpc request method=%s code=%s duration_ms=%d",
            method,
            code.value,
            duration_ms,
            extra={"method": method, "code": code.value, "duration_ms": duration_ms},
        )


class ObservedRoute(APIRoute):
    """Route class wrapping every endpoint, body decoding included, in :func:`observe_call`."""

    def get_route_handler(self) -> Callable[[Request], Awaitable[Response]]:
        handler = super().get_route_handler()
        method = self.name

        async def observed_handler(request: Request) -> Response:
            metrics: Metrics | None = getattr(request.app.state, "metrics", None)
            with observe_call(metrics, method):
                return await handler(request)

        return observed_handler
