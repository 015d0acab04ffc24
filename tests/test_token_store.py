"""Unit tests for auth/tokens.py and auth/token_store.py.

Covers:
- generate_secure_token(): alphabet, default length, clamping, uniqueness over 10^4 ids
- is_valid_token(): rejects empty, out-of-alphabet, over-length, non-string
- TokenStore.create(): rejects expiry not after creation, rejects mismatched payload type
- TokenStore.get(): visible while now < expires, None once now >= expires
- TokenStore.get(): malformed ids never reach storage
- Corrupt stored payload reads as None instead of raising
- sweep_expired() removes exactly the tokens with expires <= now
- list_for_account() / delete_for_account() are scoped by account and type
"""

import logging

import pytest
from sqlalchemy import event

from auth.models import LoginPayload, SessionPayload, TokenType, VerifyEmailPayload
from auth.store import tokens
from auth.token_store import TokenStore
from auth.tokens import (
    DEFAULT_TOKEN_LENGTH,
    SECURE_TOKEN_ALPHABET,
    generate_secure_token,
    hash_password,
    is_valid_email,
    is_valid_token,
    verify_password,
)
from core.clock import MINUTES, SecureRandom


@pytest.fixture
def store(db, clock) -> TokenStore:
    return TokenStore(db, clock, SecureRandom())


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------


class TestSecureTokens:
    def test_alphabet_has_64_symbols(self):
        assert len(SECURE_TOKEN_ALPHABET) == 64
        assert len(set(SECURE_TOKEN_ALPHABET)) == 64

    def test_default_length_and_alphabet(self):
        token = generate_secure_token(SecureRandom())
        assert len(token) == DEFAULT_TOKEN_LENGTH
        assert set(token) <= set(SECURE_TOKEN_ALPHABET)

    def test_ten_thousand_ids_are_unique_and_valid(self):
        rng = SecureRandom()
        ids = [generate_secure_token(rng) for _ in range(10_000)]
        assert len(set(ids)) == len(ids)
        assert all(is_valid_token(t) for t in ids)

    def test_length_is_clamped_with_warning(self, caplog):
        rng = SecureRandom()
        with caplog.at_level(logging.WARNING, logger="keyhold.tokens"):
            assert len(generate_secure_token(rng, 0)) == 1
            assert len(generate_secure_token(rng, 1000)) == 256
        assert len(caplog.records) == 2

    def test_byte_maps_onto_alphabet_modulo_64(self):
        class FixedBytes:
            def bytes(self, n):
                return bytes([0, 63, 64, 255][:n])

        assert generate_secure_token(FixedBytes(), 4) == "0-0-"


class TestIsValidToken:
    @pytest.mark.parametrize("value", ["", "a" * 257, "abc$", "has space", "ünï", None, 123])
    def test_rejects(self, value):
        assert is_valid_token(value) is False

    @pytest.mark.parametrize("value", ["a", "A_b-9", "z" * 256])
    def test_accepts(self, value):
        assert is_valid_token(value) is True


class TestEmailAndPasswords:
    @pytest.mark.parametrize("value", ["ada@example.com", "a.b+c@sub.example.org"])
    def test_valid_email(self, value):
        assert is_valid_email(value)

    @pytest.mark.parametrize("value", ["not-an-email", "a@b", "a @b.com", "", None])
    def test_invalid_email(self, value):
        assert not is_valid_email(value)

    def test_hash_and_verify(self):
        hashed = hash_password("hunter2hunter2", rounds=4)
        assert hashed != "hunter2hunter2"
        assert verify_password("hunter2hunter2", hashed)
        assert not verify_password("hunter2hunter3", hashed)

    def test_verify_against_garbage_hash_is_false(self):
        assert verify_password("whatever", "not-a-bcrypt-hash") is False


# ---------------------------------------------------------------------------
# TokenStore
# ---------------------------------------------------------------------------


class TestTokenStoreCreate:
    def test_create_and_get_round_trip(self, store, clock):
        token = store.create("acct1", clock.now() + 15 * MINUTES, TokenType.LOGIN, LoginPayload("ada@example.com"))
        fetched = store.get(token.id, TokenType.LOGIN)
        assert fetched is not None
        assert fetched.account_id == "acct1"
        assert fetched.created == clock.now()
        assert fetched.payload == LoginPayload(verify_email="ada@example.com")

    def test_expiry_must_be_after_creation(self, store, clock):
        with pytest.raises(ValueError):
            store.create("acct1", clock.now(), TokenType.SESSION)

    def test_mismatched_payload_type_raises(self, store, clock):
        with pytest.raises(TypeError):
            store.create("acct1", clock.now() + MINUTES, TokenType.SESSION, VerifyEmailPayload("a@b.io"))

    def test_custom_id_length(self, store, clock):
        token = store.create("acct1", clock.now() + MINUTES, TokenType.LOGIN, id_length=48)
        assert len(token.id) == 48

    def test_type_is_part_of_the_key(self, store, clock):
        token = store.create("acct1", clock.now() + MINUTES, TokenType.LOGIN)
        assert store.get(token.id, TokenType.PASSWORD_RESET) is None


class TestTokenStoreExpiry:
    def test_visible_until_expiry_then_none(self, store, clock):
        token = store.create("acct1", clock.now() + 10 * MINUTES, TokenType.LOGIN)
        clock.advance(10 * MINUTES - 1)
        assert store.get(token.id, TokenType.LOGIN) is not None
        clock.advance(1)
        assert store.get(token.id, TokenType.LOGIN) is None

    def test_include_expired_still_returns_row(self, store, clock):
        token = store.create("acct1", clock.now() + MINUTES, TokenType.SESSION)
        clock.advance(2 * MINUTES)
        assert store.get(token.id, TokenType.SESSION, include_expired=True) is not None

    def test_sweep_removes_expired_only(self, store, clock):
        short = store.create("acct1", clock.now() + MINUTES, TokenType.LOGIN)
        edge = store.create("acct1", clock.now() + 2 * MINUTES, TokenType.LOGIN)
        long = store.create("acct1", clock.now() + 60 * MINUTES, TokenType.LOGIN)
        clock.advance(2 * MINUTES)
        assert store.sweep_expired() == 2
        assert store.get(long.id, TokenType.LOGIN) is not None
        assert store.get(short.id, TokenType.LOGIN, include_expired=True) is None
        assert store.get(edge.id, TokenType.LOGIN, include_expired=True) is None


class TestTokenStoreValidation:
    def test_malformed_ids_never_query_storage(self, store, db):
        statements = []
        event.listen(db.engine, "before_cursor_execute", lambda *args: statements.append(args[2]))
        assert store.get("bad id!", TokenType.SESSION) is None
        assert store.get("x" * 257, TokenType.SESSION) is None
        assert store.get("", TokenType.SESSION) is None
        assert statements == []

    def test_corrupt_payload_reads_as_none(self, store, db, clock):
        token = store.create("acct1", clock.now() + MINUTES, TokenType.SESSION, SessionPayload(user_agent="ua"))
        with db.connect() as conn:
            conn.execute(tokens.update().where(tokens.c.id == token.id).values(payload="{not json"))
            conn.commit()
        fetched = store.get(token.id, TokenType.SESSION)
        assert fetched is not None
        assert fetched.payload is None

    def test_wrong_shape_payload_reads_as_none(self, store, db, clock):
        token = store.create("acct1", clock.now() + MINUTES, TokenType.VERIFY_EMAIL, VerifyEmailPayload("a@b.io"))
        with db.connect() as conn:
            conn.execute(tokens.update().where(tokens.c.id == token.id).values(payload='{"other": 1}'))
            conn.commit()
        assert store.get(token.id, TokenType.VERIFY_EMAIL).payload is None


class TestTokenStoreBulk:
    def test_list_and_delete_for_account(self, store, clock):
        a1 = store.create("acct1", clock.now() + MINUTES, TokenType.SESSION)
        a2 = store.create("acct1", clock.now() + MINUTES, TokenType.SESSION)
        store.create("acct1", clock.now() + MINUTES, TokenType.LOGIN)
        store.create("acct2", clock.now() + MINUTES, TokenType.SESSION)

        listed = {t.id for t in store.list_for_account("acct1", TokenType.SESSION)}
        assert listed == {a1.id, a2.id}

        assert store.delete_for_account("acct1", TokenType.SESSION) == 2
        assert store.list_for_account("acct1", TokenType.SESSION) == []
        assert len(store.list_for_account("acct1", TokenType.LOGIN)) == 1
        assert len(store.list_for_account("acct2", TokenType.SESSION)) == 1

    def test_update_payload(self, store, clock):
        token = store.create("acct1", clock.now() + MINUTES, TokenType.SESSION, SessionPayload())
        assert store.update_payload(token.id, TokenType.SESSION, SessionPayload(user_agent="new")) is True
        assert store.get(token.id, TokenType.SESSION).payload.user_agent == "new"
        assert store.update_payload("missing", TokenType.SESSION, SessionPayload()) is False
