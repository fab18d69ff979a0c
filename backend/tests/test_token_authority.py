import pytest

from core import keys
from core.errors import NotFound, Unauthorized
from models.models import TokenStatus


@pytest.mark.asyncio
async def test_issue_requires_existing_user(chat):
    with pytest.raises(NotFound):
        await chat.tokens.issue("ghost")


@pytest.mark.asyncio
async def test_issued_token_validates_for_owner_only(chat, make_user):
    token = await make_user("alice")
    await make_user("carol")

    assert len(token) == 64
    assert (await chat.tokens.validate("alice", token)).status is TokenStatus.VALID
    assert (await chat.tokens.validate("ALICE", token)).valid
    assert (await chat.tokens.validate("carol", token)).status is TokenStatus.INVALID
    assert (await chat.tokens.validate("alice", None)).status is TokenStatus.INVALID


@pytest.mark.asyncio
async def test_tokens_are_independent_per_device(chat, make_user):
    first = await make_user("alice")
    second = await chat.tokens.issue("alice")

    assert first != second
    await chat.tokens.revoke(first)

    assert not (await chat.tokens.validate("alice", first)).valid
    assert (await chat.tokens.validate("alice", second)).valid


@pytest.mark.asyncio
async def test_validation_slides_expiry(chat, redis_client, make_user):
    token = await make_user("alice")
    await redis_client.expire(keys.token_key(token), 10)
    await redis_client.expire(keys.user_token_key("alice", token), 10)

    await chat.tokens.validate("alice", token)

    assert await redis_client.ttl(keys.token_key(token)) > 10
    assert await redis_client.ttl(keys.user_token_key("alice", token)) > 10


@pytest.mark.asyncio
async def test_reverse_mapping_alone_rebuilds_index(chat, redis_client, make_user):
    token = await make_user("alice")
    await redis_client.delete(keys.user_token_key("alice", token))

    assert (await chat.tokens.validate("alice", token)).status is TokenStatus.VALID
    assert await redis_client.exists(keys.user_token_key("alice", token))


@pytest.mark.asyncio
async def test_refresh_swaps_tokens_and_keeps_old_one_in_grace(chat, make_user):
    old = await make_user("alice")

    new, result = await chat.tokens.refresh("alice", old)

    assert result.status is TokenStatus.VALID
    assert (await chat.tokens.validate("alice", new)).valid
    assert not (await chat.tokens.validate("alice", old)).valid
    assert (await chat.tokens.validate("alice", old, allow_expired=True)).status is TokenStatus.VALID_EXPIRED


@pytest.mark.asyncio
async def test_naturally_expired_token_can_be_refreshed_within_grace(chat, redis_client, clock, make_user):
    token = await make_user("alice")
    # Simulate the token aging out of Redis
    await redis_client.delete(keys.token_key(token), keys.user_token_key("alice", token))
    clock.advance(chat.tokens.ttl_seconds + 60)

    new, result = await chat.tokens.refresh("alice", token)

    assert result.expired
    assert (await chat.tokens.validate("alice", new)).valid


@pytest.mark.asyncio
async def test_refresh_after_grace_window_is_rejected(chat, redis_client, clock, make_user):
    token = await make_user("alice")
    await redis_client.delete(keys.token_key(token), keys.user_token_key("alice", token))
    clock.advance(chat.tokens.ttl_seconds + chat.tokens.grace_seconds + 1)

    with pytest.raises(Unauthorized):
        await chat.tokens.refresh("alice", token)


@pytest.mark.asyncio
async def test_refresh_with_unknown_token_is_rejected(chat, make_user):
    await make_user("alice")

    with pytest.raises(Unauthorized):
        await chat.tokens.refresh("alice", "f" * 64)

    with pytest.raises(NotFound):
        await chat.tokens.refresh("ghost", "f" * 64)


@pytest.mark.asyncio
async def test_revoke_all_returns_count_and_clears_grace(chat, redis_client, make_user):
    first = await make_user("alice")
    second = await chat.tokens.issue("alice")

    assert await chat.tokens.revoke_all("alice") == 2

    assert not (await chat.tokens.validate("alice", first)).valid
    assert not (await chat.tokens.validate("alice", second, allow_expired=True)).valid
    assert not await redis_client.exists(keys.last_token_key("alice"))


@pytest.mark.asyncio
async def test_revoke_finds_index_entry_without_reverse_mapping(chat, redis_client, make_user):
    token = await make_user("alice")
    await redis_client.delete(keys.token_key(token))

    assert await chat.tokens.revoke(token)
    assert not await redis_client.exists(keys.user_token_key("alice", token))


@pytest.mark.asyncio
async def test_list_tokens(chat, make_user):
    first = await make_user("alice")
    second = await chat.tokens.issue("alice")

    listed = {info.token for info in await chat.tokens.list_tokens("alice")}

    assert listed == {first, second}


@pytest.mark.asyncio
async def test_verify_resolves_bare_token(chat, redis_client, make_user):
    token = await make_user("alice")

    username, result, _ = await chat.tokens.verify(token)
    assert username == "alice"
    assert result.status is TokenStatus.VALID

    # Index entry only: the reverse mapping is restored
    await redis_client.delete(keys.token_key(token))
    username, result, _ = await chat.tokens.verify(token)
    assert username == "alice"
    assert await redis_client.get(keys.token_key(token)) == "alice"

    username, result, _ = await chat.tokens.verify("0" * 64)
    assert username is None
    assert not result.valid


@pytest.mark.asyncio
async def test_verify_reports_grace_tokens_as_expired(chat, make_user):
    old = await make_user("alice")
    await chat.tokens.refresh("alice", old)

    username, result, expired_at = await chat.tokens.verify(old)

    assert username == "alice"
    assert result.expired
    assert expired_at is not None


@pytest.mark.asyncio
async def test_glob_characters_never_match_other_tokens(chat, redis_client, make_user):
    token = await make_user("bob")

    for pattern in ("*", "?" * 64, "[0-9a-f]*"):
        username, result, _ = await chat.tokens.verify(pattern)
        assert username is None
        assert result.status is TokenStatus.INVALID
        assert not await chat.tokens.revoke(pattern)
        assert not (await chat.tokens.validate("bob", pattern)).valid

    assert await redis_client.exists(keys.user_token_key("bob", token))
    assert (await chat.tokens.validate("bob", token)).valid


@pytest.mark.asyncio
async def test_revoke_all_sweeps_unindexed_reverse_mappings(chat, redis_client, make_user):
    token = await make_user("bob")
    await make_user("carol")
    await redis_client.delete(keys.user_token_key("bob", token))

    assert await chat.tokens.revoke_all("bob") == 1

    assert not (await chat.tokens.validate("bob", token)).valid
    assert not await redis_client.exists(keys.token_key(token))
    # carol's token is not bob's to revoke
    assert len(await chat.tokens.list_tokens("carol")) == 1
