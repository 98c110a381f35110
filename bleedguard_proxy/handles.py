from typing import Any, Optional, Protocol, runtime_checkable

from mitmproxy import http
from mitmproxy.proxy.mode_specs import UpstreamMode

POLICY_ABORT_REASON = "Blocked by policy: host failed the Heartbleed check"
CANCEL_REASON = "Request cancelled"


@runtime_checkable
class GatedRequest(Protocol):
    """What the gate needs from an intercepted request."""

    @property
    def scheme(self) -> str: ...

    @property
    def host(self) -> str: ...

    @property
    def route(self) -> Optional[str]: ...

    def suspend(self) -> None: ...

    def resume(self) -> None: ...

    def cancel(self, reason: Optional[str] = None) -> None: ...


class FlowHandle:
    """
    GatedRequest over a mitmproxy HTTPFlow.
    - suspend/resume map to flow.intercept()/flow.resume()
    - cancel answers with a 403 carrying the reason, so the client sees a
      policy block instead of a network error; works with or without a prior suspend
    """
    def __init__(self, flow: http.HTTPFlow):
        self.flow = flow

    @property
    def scheme(self) -> str:
        return self.flow.request.scheme

    @property
    def host(self) -> str:
        return self.flow.request.host

    @property
    def route(self) -> Optional[str]:
        # upstream proxy of the client connection, so the lookup leaves the same way
        mode = getattr(self.flow.client_conn, "proxy_mode", None)
        if isinstance(mode, UpstreamMode) and mode.scheme in ("http", "https"):
            host, port = mode.address
            return f"{mode.scheme}://{host}:{port}"
        return None

    def suspend(self) -> None:
        self.flow.intercept()

    def resume(self) -> None:
        # no-op for flows that are not intercepted (already resumed or killed elsewhere)
        self.flow.resume()

    def cancel(self, reason: Optional[str] = None) -> None:
        self.flow.response = http.Response.make(
            403, (reason or CANCEL_REASON).encode(), {"Content-Type": "text/plain"}
        )
        self.flow.resume()


def as_gated_request(subject: Any) -> Optional[GatedRequest]:
    """Typed view of an interception subject, or None when it cannot be gated."""
    if isinstance(subject, http.HTTPFlow):
        if subject.request is None:
            return None
        return FlowHandle(subject)
    if isinstance(subject, GatedRequest):
        return subject
    return None
