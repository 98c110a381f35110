import time
import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from typing import Dict, List

from .gate import PromptAnswer

logger = logging.getLogger(__name__)

PROMPT_TITLE = "Possible Heartbleed vulnerability"
PROMPT_MESSAGE = (
    "{host} failed the Heartbleed check. Data sent to it, passwords included, "
    "may be readable by an attacker. Continue anyway?"
)


@dataclass
class PendingPrompt:
    id: str
    host: str
    title: str
    message: str
    created_at: float
    future: "asyncio.Future[PromptAnswer]" = field(repr=False)

    def age(self) -> float:
        return time.monotonic() - self.created_at


class ApprovalBoard:
    """
    Queue of open proceed/decline questions, answered from the approval UI.
    - confirm() parks until answer() is called for its id
    - ids are unguessable so pages loaded through the proxy cannot answer for the user
    - confirm() and answer() both run on the proxy loop (the UI is served from it)
    """
    def __init__(self):
        self._pending: Dict[str, PendingPrompt] = {}

    async def confirm(self, host: str) -> PromptAnswer:
        prompt = PendingPrompt(
            id=secrets.token_urlsafe(16),
            host=host,
            title=PROMPT_TITLE,
            message=PROMPT_MESSAGE.format(host=host),
            created_at=time.monotonic(),
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[prompt.id] = prompt
        logger.info(f"[bleedguard] waiting for a decision on {host} ({prompt.id})")
        try:
            return await prompt.future
        finally:
            self._pending.pop(prompt.id, None)
            logger.debug(f"[bleedguard] prompt for {host} closed after {prompt.age():.1f}s")

    def answer(self, prompt_id: str, proceed: bool, remember: bool = False) -> PendingPrompt:
        prompt = self._pending[prompt_id]
        if not prompt.future.done():
            prompt.future.set_result(PromptAnswer(proceed, remember))
        return prompt

    def pending(self) -> List[PendingPrompt]:
        return list(self._pending.values())

    def __len__(self) -> int:
        return len(self._pending)
