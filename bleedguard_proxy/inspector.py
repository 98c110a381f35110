import os
import enum
import json
import asyncio
import logging
from typing import Callable, Optional
from urllib.parse import quote

import anyio
import httpx

from .errors import MalformedResponse, ReputationError, TransportError

logger = logging.getLogger(__name__)

# filippo.io/Heartbleed backend; the host is appended as the last path segment
DEFAULT_CHECK_URL = "http://bleed-1161785939.us-east-1.elb.amazonaws.com/bleed"


class Verdict(enum.Enum):
    VULNERABLE = "vulnerable"
    NOT_VULNERABLE = "not_vulnerable"
    SERVICE_ERROR = "service_error"


def parse_envelope(body: bytes, strict: bool = False) -> Verdict:
    """
    {"code": 1} -> NOT_VULNERABLE, any other code -> VULNERABLE.
    Non-JSON or non-object bodies raise MalformedResponse. With strict=True a
    missing or non-integer code is malformed too instead of counting as vulnerable.
    """
    try:
        obj = json.loads(body)
    except ValueError as e:
        raise MalformedResponse(f"body is not JSON: {e}") from e
    if not isinstance(obj, dict):
        raise MalformedResponse(f"expected a JSON object, got {type(obj).__name__}")

    code = obj.get("code")
    is_int = isinstance(code, int) and not isinstance(code, bool)
    if strict and not is_int:
        raise MalformedResponse(f"missing or non-integer code: {code!r}")
    if is_int and code == 1:
        return Verdict.NOT_VULNERABLE
    return Verdict.VULNERABLE


class ReputationClient:
    """
    Anonymous out-of-band lookup against the bleed check service.
    - GET <url>/<host>, no cookies, no credentials, no env proxies/netrc
    - body is collected in full before parsing, up to max_body bytes
    - every transport or parse failure ends as SERVICE_ERROR, never VULNERABLE
    - one lookup, one verdict: no retries here
    """
    def __init__(
        self,
        url: str | None = None,
        timeout_s: float | None = None,
        strict: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_body: int = int(os.getenv("BLEED_MAX_BODY_BYTES", "65536")),
    ):
        self.url = (url or os.getenv("BLEED_CHECK_URL", DEFAULT_CHECK_URL)).rstrip("/")
        self.timeout_s = timeout_s if timeout_s is not None else float(os.getenv("BLEED_CHECK_TIMEOUT", "10"))
        self.strict = strict if strict is not None else os.getenv("BLEED_STRICT_ENVELOPE", "false").lower() == "true"
        self._transport = transport
        self.max_body = max_body

    @property
    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.timeout_s)

    def url_for(self, host: str) -> str:
        return f"{self.url}/{quote(host, safe='')}"

    def _client(self, route: Optional[str]) -> httpx.AsyncClient:
        # fresh client per lookup: empty cookie jar, nothing shared with proxied traffic
        kwargs = dict(timeout=self.timeout, trust_env=False, follow_redirects=False)
        if self._transport is not None:
            kwargs["transport"] = self._transport
        elif route:
            kwargs["proxy"] = route
        return httpx.AsyncClient(**kwargs)

    async def fetch(self, host: str, route: Optional[str] = None) -> bytes:
        buf = bytearray()
        try:
            async with self._client(route) as cli:
                async with cli.stream("GET", self.url_for(host)) as r:
                    if not r.is_success:
                        raise TransportError(f"check service answered {r.status_code}")
                    async for chunk in r.aiter_bytes():
                        buf.extend(chunk)
                        if len(buf) > self.max_body:
                            raise MalformedResponse(f"body exceeds {self.max_body} bytes")
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e
        return bytes(buf)

    async def verdict(self, host: str, route: Optional[str] = None) -> Verdict:
        try:
            with anyio.fail_after(self.timeout_s):
                body = await self.fetch(host, route)
            result = parse_envelope(body, strict=self.strict)
        except TimeoutError:
            logger.warning(f"[bleedguard] check for {host} timed out after {self.timeout_s}s")
            return Verdict.SERVICE_ERROR
        except ReputationError as e:
            logger.warning(f"[bleedguard] check for {host} failed: {e!r}")
            return Verdict.SERVICE_ERROR
        logger.info(f"[bleedguard] check for {host}: {result.value}")
        return result

    def check(
        self,
        host: str,
        on_complete: Callable[[Verdict], None],
        route: Optional[str] = None,
    ) -> "asyncio.Task[Verdict]":
        """
        Dispatch the lookup on the running loop and call on_complete(verdict)
        exactly once, on the loop thread, when it finishes.
        """
        task = asyncio.get_running_loop().create_task(self.verdict(host, route))

        def _deliver(t: "asyncio.Task[Verdict]") -> None:
            if t.cancelled():
                result = Verdict.SERVICE_ERROR
            elif t.exception() is not None:
                logger.error(f"[bleedguard] check for {host} crashed", exc_info=t.exception())
                result = Verdict.SERVICE_ERROR
            else:
                result = t.result()
            try:
                on_complete(result)
            except Exception:
                logger.exception(f"[bleedguard] completion callback for {host} failed")

        task.add_done_callback(_deliver)
        return task
