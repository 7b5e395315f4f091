from datetime import timedelta

import pytest

from vibeauth.service.sessions import SessionManager, hash_secret, split_token


@pytest.fixture
def user(provider):
    return provider.users.create("alice@example.com")


@pytest.fixture
def sessions(db, clock):
    return SessionManager(db, ttl=timedelta(hours=2), clock=clock)


class TestSplitToken:
    @pytest.mark.parametrize("token", [None, "", "no-colon", ":secret", "id:"])
    def test_malformed(self, token):
        assert split_token(token) is None

    def test_secret_may_contain_colons(self):
        assert split_token("abc:def:ghi") == ("abc", "def:ghi")


class TestSessionManager:
    def test_create_and_validate(self, sessions, user, db):
        token, session = sessions.create(user.id, ip_address="10.0.0.2", user_agent="pytest", metadata={"method": "test"})

        session_id, secret = token.split(":", 1)
        assert session_id == session.id
        row = db.query_one("SELECT token_hash FROM vibekit_sessions WHERE id = ?", (session.id,))
        assert row["token_hash"] == hash_secret(secret)
        assert secret not in row["token_hash"]

        found = sessions.validate(token)
        assert found.user_id == user.id
        assert found.is_current is True
        assert found.metadata == {"method": "test"}
        assert found.user_agent == "pytest"

    def test_tampered_secret_rejected(self, sessions, user):
        token, _ = sessions.create(user.id)
        assert sessions.validate(token + "x") is None
        assert sessions.validate("unknown:" + token.split(":", 1)[1]) is None

    def test_expired_session_is_deleted(self, sessions, user, clock, db):
        token, session = sessions.create(user.id)
        clock.advance(hours=2)

        assert sessions.validate(token) is None
        assert db.query_one("SELECT id FROM vibekit_sessions WHERE id = ?", (session.id,)) is None

    def test_revoke(self, sessions, user):
        token, session = sessions.create(user.id)

        assert sessions.revoke(session.id) is True
        assert sessions.validate(token) is None
        assert sessions.revoke(session.id) is False

    def test_revoke_all_invalidates_every_earlier_token(self, sessions, user, provider):
        tokens = [sessions.create(user.id)[0] for _ in range(3)]
        bob = provider.users.create("bob@example.com")
        other, _ = sessions.create(bob.id)

        assert sessions.revoke_all(user.id) == 3
        assert all(sessions.validate(token) is None for token in tokens)
        assert sessions.validate(other) is not None

    def test_revoke_all_can_keep_current(self, sessions, user):
        keep_token, keep = sessions.create(user.id)
        drop_token, _ = sessions.create(user.id)

        assert sessions.revoke_all(user.id, except_session_id=keep.id) == 1
        assert sessions.validate(keep_token) is not None
        assert sessions.validate(drop_token) is None

    def test_list_active_newest_first(self, sessions, user, clock):
        _, oldest = sessions.create(user.id)
        clock.advance(minutes=1)
        _, middle = sessions.create(user.id)
        clock.advance(minutes=1)
        _, newest = sessions.create(user.id)

        listed = sessions.list_active(user.id, current_session_id=middle.id)
        assert [s.id for s in listed] == [newest.id, middle.id, oldest.id]
        assert [s.is_current for s in listed] == [False, True, False]

        clock.advance(hours=2, seconds=-30)
        assert [s.id for s in sessions.list_active(user.id)] == [newest.id]

    def test_clean_expired(self, sessions, user, clock):
        sessions.create(user.id)
        clock.advance(hours=1)
        sessions.create(user.id)
        clock.advance(hours=1, minutes=1)

        assert sessions.clean_expired() == 1
