import os
import enum
import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, NamedTuple, Optional, Protocol, Set

import anyio

from .cache import Decision, DecisionCache
from .filters import SchemeFilter
from .handles import POLICY_ABORT_REASON, GatedRequest, as_gated_request
from .inspector import ReputationClient, Verdict

logger = logging.getLogger(__name__)


class GateState(enum.Enum):
    BYPASSED = "bypassed"
    CACHE_ALLOW = "cache_allow"
    CACHE_DENY = "cache_deny"
    CHECKING = "checking"


class PromptAnswer(NamedTuple):
    proceed: bool
    remember: bool = False


class UserPrompt(Protocol):
    async def confirm(self, host: str) -> PromptAnswer: ...


@dataclass(eq=False)
class PendingCheck:
    """One suspended request waiting on its lookup. Settles the request once."""
    request: GatedRequest
    host: str
    started: float = field(default_factory=time.monotonic)
    task: Optional[asyncio.Task] = None
    settled: bool = False

    def resume(self) -> bool:
        if self.settled:
            return False
        self.settled = True
        self.request.resume()
        return True

    def cancel(self, reason: str) -> bool:
        if self.settled:
            return False
        self.settled = True
        self.request.cancel(reason)
        return True


class GateController:
    """
    Per-request flow:
      non-https             -> bypass
      cached deny           -> cancel without suspending
      cached allow          -> untouched
      miss                  -> suspend, look up, then
        not vulnerable      -> cache allow, resume
        service error       -> resume, cache untouched (fail open)
        vulnerable          -> ask the user; cache only if they ask to remember
    """
    def __init__(
        self,
        client: Optional[ReputationClient] = None,
        cache: Optional[DecisionCache] = None,
        prompt: Optional[UserPrompt] = None,
        scheme_filter: Optional[SchemeFilter] = None,
        prompt_timeout_s: float = float(os.getenv("BLEED_PROMPT_TIMEOUT", "90")),
    ):
        self.client = client if client is not None else ReputationClient()
        self.cache = cache if cache is not None else DecisionCache()
        self.prompt = prompt
        self.filter = scheme_filter if scheme_filter is not None else SchemeFilter()
        self.prompt_timeout_s = prompt_timeout_s
        self._pending: Set[PendingCheck] = set()

    def pending_count(self) -> int:
        return len(self._pending)

    def observe(self, subject: Any) -> Optional[GateState]:
        """Entry point for an "about to send" event. Never blocks."""
        request = as_gated_request(subject)
        if request is None:
            logger.debug(f"[bleedguard] {type(subject).__name__} is not a gateable request")
            return None

        if not self.filter.is_eligible(request.scheme):
            return GateState.BYPASSED

        host = request.host
        cached = self.cache.lookup(host)
        if cached is Decision.DENY:
            logger.info(f"[bleedguard] cancelling request to {host} (cached deny)")
            request.cancel(POLICY_ABORT_REASON)
            return GateState.CACHE_DENY
        if cached is Decision.ALLOW:
            logger.debug(f"[bleedguard] allowing {host} (cached allow)")
            return GateState.CACHE_ALLOW

        pending = PendingCheck(request, host)
        self._pending.add(pending)
        try:
            request.suspend()
            pending.task = self.client.check(
                host, lambda verdict: self._on_verdict(pending, verdict), route=request.route
            )
        except Exception:
            logger.exception(f"[bleedguard] could not dispatch check for {host}, allowing")
            self._resume(pending)
        return GateState.CHECKING

    def _on_verdict(self, pending: PendingCheck, verdict: Verdict) -> None:
        host = pending.host
        try:
            if verdict is Verdict.NOT_VULNERABLE:
                self.cache.record(host, Decision.ALLOW)
                self._resume(pending)
            elif verdict is Verdict.VULNERABLE:
                pending.task = asyncio.get_running_loop().create_task(self._escalate(pending))
            else:
                logger.warning(f"[bleedguard] check service error for {host}, allowing (fail open)")
                self._resume(pending)
        except Exception:
            logger.exception(f"[bleedguard] resolving {host} failed, allowing")
            self._resume(pending)

    async def _escalate(self, pending: PendingCheck) -> None:
        host = pending.host
        try:
            answer = await self._ask(host)
        except asyncio.CancelledError:
            self._resume(pending)
            raise
        except Exception:
            logger.exception(f"[bleedguard] prompt for {host} failed, allowing")
            self._resume(pending)
            return

        logger.info(f"[bleedguard] user answer for {host}: proceed={answer.proceed} remember={answer.remember}")
        if answer.proceed:
            if answer.remember:
                self.cache.record(host, Decision.ALLOW)
            self._resume(pending)
        else:
            if answer.remember:
                self.cache.record(host, Decision.DENY)
            self._cancel(pending, POLICY_ABORT_REASON)

    async def _ask(self, host: str) -> PromptAnswer:
        if self.prompt is None:
            logger.warning(f"[bleedguard] {host} looks vulnerable and nobody can be asked, blocking")
            return PromptAnswer(proceed=False)
        with anyio.move_on_after(self.prompt_timeout_s) as scope:
            return await self.prompt.confirm(host)
        if scope.cancelled_caught:
            logger.info(f"[bleedguard] no answer for {host} within {self.prompt_timeout_s}s, blocking")
        return PromptAnswer(proceed=False)

    def _resume(self, pending: PendingCheck) -> None:
        if pending.resume():
            self._settled(pending, "resumed")

    def _cancel(self, pending: PendingCheck, reason: str) -> None:
        if pending.cancel(reason):
            self._settled(pending, "cancelled")

    def _settled(self, pending: PendingCheck, how: str) -> None:
        self._pending.discard(pending)
        held = time.monotonic() - pending.started
        logger.debug(f"[bleedguard] {how} request to {pending.host} after {held:.2f}s")

    async def join(self) -> None:
        """Wait until every in-flight check (prompt included) has settled."""
        while self._pending:
            tasks = [p.task for p in list(self._pending) if p.task is not None]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)
            await asyncio.sleep(0)
