from __future__ import annotations

from typing import Optional

from services.scans.models import Expert


class StaticIdentityProvider:
    """Always reports the same expert (or nobody). Sign-in is handled elsewhere."""

    def __init__(self, expert: Optional[Expert] = None) -> None:
        self._expert = expert

    def current_expert(self) -> Optional[Expert]:
        return self._expert

    def sign_in(self, expert: Expert) -> None:
        self._expert = expert

    def sign_out(self) -> None:
        self._expert = None
