import asyncio

from src.relay.config import AccessConfig, UserDef
from src.relay.quota import QuotaDecision, StaticQuota


def make_quota(spent: dict[str, int]) -> StaticQuota:
    access = AccessConfig(
        users={
            "k-free": UserDef(user_id="free", api_key="k-free"),
            "k-capped": UserDef(user_id="capped", api_key="k-capped", token_limit=100),
            "k-listed": UserDef(
                user_id="listed",
                api_key="k-listed",
                allowed_models=("gpt-4o-mini", "claude/claude-3-5-haiku-latest"),
            ),
            "k-any": UserDef(user_id="any", api_key="k-any", allowed_models=("*",)),
        }
    )
    return StaticQuota(access, lambda user_id: spent.get(user_id, 0))


def check(quota: StaticQuota, user: str, provider: str, model: str) -> QuotaDecision:
    return asyncio.run(quota.check(user, provider, model))


def test_unlimited_user_passes() -> None:
    decision = check(make_quota({"free": 10**9}), "free", "openai", "gpt-4o")

    assert decision.allowed


def test_token_ceiling_is_checked_against_spent_tokens() -> None:
    spent = {"capped": 99}
    quota = make_quota(spent)

    assert check(quota, "capped", "openai", "gpt-4o").token_pass

    spent["capped"] = 100
    decision = check(quota, "capped", "openai", "gpt-4o")
    assert not decision.token_pass
    assert decision.model_pass
    assert not decision.allowed


def test_allow_list_matches_plain_and_provider_qualified_models() -> None:
    quota = make_quota({})

    assert check(quota, "listed", "openai", "gpt-4o-mini").model_pass
    assert check(quota, "listed", "claude", "claude-3-5-haiku-latest").model_pass
    assert not check(quota, "listed", "openai", "claude-3-5-haiku-latest").model_pass
    assert not check(quota, "listed", "openai", "gpt-4o").model_pass
    assert check(quota, "any", "gemini", "gemini-2.0-flash").model_pass


def test_unknown_user_is_denied() -> None:
    decision = check(make_quota({}), "ghost", "openai", "gpt-4o")

    assert decision == QuotaDecision(token_pass=False, model_pass=False)
