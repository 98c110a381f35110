# gateway.py
# -*- coding: utf-8 -*-
import logging
from html import escape
from urllib.parse import urlsplit

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import HTMLResponse

from .approvals import ApprovalBoard
from .gate import GateController

logger = logging.getLogger(__name__)


def _decide_form(pid: str, proceed: bool, remember: bool, label: str) -> str:
    action = f"/admin/decide?pid={pid}&proceed={str(proceed).lower()}&remember={str(remember).lower()}"
    return f"<form method='post' action='{action}' style='display:inline'><button>{label}</button></form> "


def _same_origin(request: Request) -> bool:
    # browsers send Origin on cross-site form posts; without one, trust Sec-Fetch-Site
    origin = request.headers.get("origin")
    if origin is None:
        return request.headers.get("sec-fetch-site", "same-origin") in ("same-origin", "none")
    return urlsplit(origin).netloc == request.headers.get("host")


def create_app(board: ApprovalBoard, controller: GateController) -> FastAPI:
    app = FastAPI(title="bleedguard approvals")

    # ============ request logging middleware ============
    @app.middleware("http")
    async def log_req(request: Request, call_next):
        logger.debug(f">> {request.method} {request.url.path}")
        resp = await call_next(request)
        logger.debug(f"<< {resp.status_code} {request.url.path}")
        return resp
    # ====================================================

    @app.get("/admin", response_class=HTMLResponse)
    async def admin():
        items = []
        for p in board.pending():
            items.append(
                f"<li><b>{escape(p.title)}</b> ({p.id}, waiting {p.age():.0f}s)<br/>{escape(p.message)}<br/>"
                + _decide_form(p.id, True, False, "Proceed")
                + _decide_form(p.id, True, True, "Always proceed")
                + _decide_form(p.id, False, False, "Decline")
                + _decide_form(p.id, False, True, "Always decline")
                + "</li>"
            )
        html = f"""
        <h2>Pending decisions ({len(items)})</h2>
        <ul>{''.join(items) if items else '<i>none</i>'}</ul>
        <hr/>
        <p>{controller.pending_count()} check(s) in flight, {len(controller.cache)} host(s) cached</p>
        <p><a href="/admin/cache">/admin/cache</a> | <a href="/health">/health</a></p>
        """
        return HTMLResponse(html)

    @app.post("/admin/decide")
    async def decide(request: Request, pid: str, proceed: bool, remember: bool = False):
        if not _same_origin(request):
            logger.warning(f"[bleedguard] rejected decision from origin {request.headers.get('origin')!r}")
            raise HTTPException(403, "forbidden")
        try:
            prompt = board.answer(pid, proceed, remember)
        except KeyError:
            raise HTTPException(404, "not found")
        verb = "Proceeding to" if proceed else "Declined"
        note = " (remembered)" if remember else ""
        return HTMLResponse(f"<a href='/admin'>{verb} {escape(prompt.host)}{note}</a>")

    @app.get("/admin/cache")
    async def cache():
        return {host: d.value for host, d in sorted(controller.cache.snapshot().items())}

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "pending_prompts": len(board),
            "checks_in_flight": controller.pending_count(),
            "cached_hosts": len(controller.cache),
        }

    return app
