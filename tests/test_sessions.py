from datetime import timedelta

from gatehouse.service.sessions import session_id_for
from gatehouse.service.tokens import hash_token


async def _session(services, user, **kwargs):
    token = services.sessions.generate_session_token()
    session = await services.sessions.create_session(token, user.id, **kwargs)
    return token, session


async def test_token_is_never_stored(services, clock):
    user = services.create_user()
    token, session = await _session(services, user, user_agent="ua", ip_address="10.0.0.1")
    assert session.id == hash_token(token) == session_id_for(token)
    assert token not in services.store.sessions
    assert session.expires_at == clock.now + timedelta(days=30)

    validation = await services.sessions.validate_session_token(token)
    assert validation.valid
    assert validation.user.id == user.id


async def test_missing_and_unknown_tokens_are_invalid(services):
    assert not (await services.sessions.validate_session_token(None)).valid
    assert not (await services.sessions.validate_session_token("")).valid
    assert not (await services.sessions.validate_session_token("nope")).valid


async def test_expired_session_is_removed(services, clock):
    user = services.create_user()
    token, session = await _session(services, user)
    clock.advance(days=30)
    assert not (await services.sessions.validate_session_token(token)).valid
    assert services.store.get_session(session.id) is None


async def test_session_renews_inside_threshold(services, clock):
    user = services.create_user()
    token, session = await _session(services, user)

    # 20 days left is outside the 15 day threshold
    clock.advance(days=10)
    validation = await services.sessions.validate_session_token(token)
    assert validation.session.expires_at == session.expires_at

    # 3 days left renews to a full lifetime from now
    clock.advance(days=17)
    validation = await services.sessions.validate_session_token(token)
    assert validation.session.expires_at == clock.now + timedelta(days=30)
    assert services.store.get_session(session.id).expires_at == clock.now + timedelta(days=30)


async def test_disabled_user_invalidates_session(services):
    user = services.create_user()
    token, session = await _session(services, user)
    services.store.update_user(user.id, is_disabled=True)
    assert not (await services.sessions.validate_session_token(token)).valid
    assert services.store.get_session(session.id) is None


async def test_invalidate_and_list(services, clock):
    user = services.create_user()
    keep_token, keep = await _session(services, user)
    await _session(services, user)
    other_token, other = await _session(services, user)

    assert await services.sessions.invalidate_session(other.id)
    assert not (await services.sessions.validate_session_token(other_token)).valid
    assert len(await services.sessions.list_user_sessions(user.id)) == 2

    removed = await services.sessions.invalidate_user_sessions(user.id, except_session_id=keep.id)
    assert removed == 1
    assert [s.id for s in await services.sessions.list_user_sessions(user.id)] == [keep.id]

    clock.advance(days=31)
    assert await services.sessions.list_user_sessions(user.id) == []


async def test_lifetime_comes_from_runtime_config(services, clock):
    await services.config.set("security.session.lifetime_days", 7)
    user = services.create_user()
    _, session = await _session(services, user)
    assert session.expires_at == clock.now + timedelta(days=7)
