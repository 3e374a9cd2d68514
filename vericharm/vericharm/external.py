"""
Bounded calls to external collaborators.

Trust lookups, provers and indexing services may block; every call the
core makes to them goes through BoundedExecutor.call so no operation
waits longer than the configured timeout.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Optional

from .config import EXTERNAL_CALL_TIMEOUT_SECONDS
from .errors import ExternalServiceTimeout, ServiceUnavailable, VeriCharmError

logger = logging.getLogger(__name__)


class BoundedExecutor:

    def __init__(self, timeout_seconds: float = EXTERNAL_CALL_TIMEOUT_SECONDS, max_workers: int = 8):
        self._timeout = timeout_seconds
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="vericharm-ext")

    @property
    def timeout(self) -> float:
        return self._timeout

    def call(self, fn: Callable[..., Any], *args: Any, timeout: Optional[float] = None,
             service: str = "external", **kwargs: Any) -> Any:
        """
        Run fn(*args, **kwargs) with a deadline.

        Raises:
            ExternalServiceTimeout: the call did not finish in time
            ServiceUnavailable: the call raised a non-VeriCharm exception
        """
        timeout = self._timeout if timeout is None else timeout
        future = self._pool.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning("%s call timed out after %.2fs", service, timeout)
            raise ExternalServiceTimeout(
                f"{service} did not respond within {timeout}s",
                {"service": service, "timeout_seconds": timeout},
            )
        except VeriCharmError:
            raise
        except Exception as e:
            logger.warning("%s call failed: %s", service, e)
            raise ServiceUnavailable(f"{service} failed: {e}", {"service": service}) from e

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)
