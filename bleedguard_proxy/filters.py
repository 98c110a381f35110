from typing import Iterable

SECURE_SCHEMES = ("https",)


class SchemeFilter:
    """
    - Only encrypted-transport requests are gated.
    - Anything else passes untouched: no suspend, no cache access.
    """
    def __init__(self, secure_schemes: Iterable[str] = SECURE_SCHEMES):
        self.secure_schemes = {s.lower() for s in secure_schemes}

    def is_eligible(self, scheme: str) -> bool:
        return (scheme or "").lower() in self.secure_schemes
