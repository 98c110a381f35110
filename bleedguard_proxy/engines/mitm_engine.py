import os
import asyncio
import logging
from typing import Optional

import anyio
import uvicorn
from mitmproxy import ctx, exceptions, http

from ..approvals import ApprovalBoard
from ..gate import GateController
from ..gateway import create_app

logger = logging.getLogger(__name__)


def _seconds(name: str) -> float:
    # timeouts are str options so fractional seconds survive the configure pass
    raw = getattr(ctx.options, name)
    try:
        value = float(raw)
    except ValueError:
        raise exceptions.OptionsError(f"{name} must be a number of seconds, got {raw!r}")
    if value <= 0:
        raise exceptions.OptionsError(f"{name} must be positive, got {raw!r}")
    return value


class BleedGuardMitm:
    """
    - Gates HTTPS requests on the bleed check service (allow / ask / block).
    - Plain HTTP and cached hosts never wait on the service.
    - fail-open: check service errors always let the request through.
    - Serves the approval UI on 127.0.0.1:<bleedguard_ui_port> while running.
    """
    def __init__(
        self,
        controller: Optional[GateController] = None,
        board: Optional[ApprovalBoard] = None,
        ui_port: int = int(os.getenv("BLEED_UI_PORT", "8081")),
    ):
        self.board = board if board is not None else ApprovalBoard()
        self.controller = controller if controller is not None else GateController(prompt=self.board)
        self.ui_port = ui_port
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task] = None

    def load(self, loader):
        client = self.controller.client
        loader.add_option(
            "bleedguard_check_url", str, client.url,
            "Base URL of the bleed check service; the host is appended as a path segment.",
        )
        loader.add_option(
            "bleedguard_check_timeout", str, str(client.timeout_s),
            "Seconds before a check counts as a service error and the request is let through.",
        )
        loader.add_option(
            "bleedguard_strict_envelope", bool, client.strict,
            "Treat a check response without an integer code as a service error instead of vulnerable.",
        )
        loader.add_option(
            "bleedguard_prompt_timeout", str, str(self.controller.prompt_timeout_s),
            "Seconds to wait for a proceed/decline answer before blocking.",
        )
        loader.add_option(
            "bleedguard_ui_port", int, self.ui_port,
            "Port of the approval UI on 127.0.0.1, 0 disables it.",
        )
        logger.info("[bleedguard] addon loaded (https only)")

    def configure(self, updated):
        client = self.controller.client
        if "bleedguard_check_url" in updated:
            client.url = ctx.options.bleedguard_check_url.rstrip("/")
        if "bleedguard_check_timeout" in updated:
            client.timeout_s = _seconds("bleedguard_check_timeout")
        if "bleedguard_strict_envelope" in updated:
            client.strict = ctx.options.bleedguard_strict_envelope
        if "bleedguard_prompt_timeout" in updated:
            self.controller.prompt_timeout_s = _seconds("bleedguard_prompt_timeout")
        if "bleedguard_ui_port" in updated:
            self.ui_port = ctx.options.bleedguard_ui_port

    async def running(self):
        if self.ui_port <= 0 or self._server is not None:
            return
        config = uvicorn.Config(
            create_app(self.board, self.controller),
            host="127.0.0.1", port=self.ui_port, log_level="warning",
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info(f"[bleedguard] approval UI on http://127.0.0.1:{self.ui_port}/admin")

    def request(self, flow: http.HTTPFlow):
        self.controller.observe(flow)

    async def done(self):
        if self._server is not None:
            self._server.should_exit = True
            await self._server_task
            self._server = self._server_task = None
        if self.controller.pending_count():
            logger.info(f"[bleedguard] waiting on {self.controller.pending_count()} check(s) before exit")
            with anyio.move_on_after(5):
                await self.controller.join()


def create_addon() -> BleedGuardMitm:
    """
    Entry point for mitmproxy scripts, e.g. a bleedguard_addon.py holding
      from bleedguard_proxy.engines.mitm_engine import create_addon
      addons = [create_addon()]
    then `mitmdump -s bleedguard_addon.py`.
    """
    return BleedGuardMitm()
