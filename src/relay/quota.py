from dataclasses import dataclass
from typing import Callable, Protocol

from .config import AccessConfig


@dataclass(frozen=True)
class QuotaDecision:
    token_pass: bool
    model_pass: bool

    @property
    def allowed(self) -> bool:
        return self.token_pass and self.model_pass


class QuotaPolicy(Protocol):
    async def check(self, user_id: str, provider: str, model: str) -> QuotaDecision: ...


class StaticQuota:
    """Per-user token ceiling and model allow-list from the access file.

    ``usage_lookup`` returns the tokens already spent by a user; the ceiling is
    checked before the call, so a single stream may overshoot it.
    """

    def __init__(self, access: AccessConfig, usage_lookup: Callable[[str], int]) -> None:
        self._limits = {user.user_id: user for user in access.users.values()}
        self._usage_lookup = usage_lookup

    async def check(self, user_id: str, provider: str, model: str) -> QuotaDecision:
        user = self._limits.get(user_id)
        if user is None:
            return QuotaDecision(token_pass=False, model_pass=False)
        token_pass = user.token_limit is None or self._usage_lookup(user_id) < user.token_limit
        model_pass = user.allowed_models is None or any(
            candidate in (model, f"{provider}/{model}", "*") for candidate in user.allowed_models
        )
        return QuotaDecision(token_pass=token_pass, model_pass=model_pass)
