import json
import time

import pytest

from parley.config import Settings
from parley.service.auth import AuthService
from parley.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    ServerError,
    ValidationError,
)
from parley.storage.memory import MemoryStore


def make_settings(**overrides):
    values = {
        "jwt_secret": "unit-test-secret-key-that-is-long-enough-1234",
        "user_key_encryption_key": "unit-test-encryption-material",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth(store):
    return AuthService(store, make_settings())


class TestAccounts:
    async def test_signup_and_login(self, auth):
        user, token = await auth.signup(" Person@Example.com ", "TestPassword123!")
        assert user.email == "person@example.com"
        assert auth.authenticate(f"Bearer {token}").user_id == user.id

        logged_in, _ = await auth.login("person@example.com", "TestPassword123!")
        assert logged_in.id == user.id

    async def test_password_is_hashed_with_argon2id(self, auth, store):
        user, _ = await auth.signup("hash@example.com", "TestPassword123!")
        stored_hash, algo = store.get_password_record(user.id)
        assert algo == "argon2id"
        assert stored_hash.startswith("$argon2id$")

    async def test_wrong_password(self, auth):
        await auth.signup("a@example.com", "TestPassword123!")
        with pytest.raises(AuthenticationError):
            await auth.login("a@example.com", "wrong-password")

    async def test_duplicate_email(self, auth):
        await auth.signup("dup@example.com", "TestPassword123!")
        with pytest.raises(ConflictError):
            await auth.signup("DUP@example.com", "TestPassword123!")

    async def test_blocked_login(self, auth, store):
        user, _ = await auth.signup("blocked@example.com", "TestPassword123!")
        store.update_user_quota(user.id, is_blocked=True)
        with pytest.raises(ForbiddenError):
            await auth.login("blocked@example.com", "TestPassword123!")

    async def test_signup_disabled(self, store):
        auth = AuthService(store, make_settings(allow_signup=False))
        with pytest.raises(ForbiddenError):
            await auth.signup("new@example.com", "TestPassword123!")


class TestTokens:
    def test_missing_or_malformed_header(self, auth):
        assert auth.authenticate(None) is None
        assert auth.authenticate("Basic abc") is None
        assert auth.authenticate("Bearer not.a.jwt") is None

    def test_tampered_signature(self, auth, store):
        user = store.create_user("t@example.com")
        token = auth.issue_token(user)
        header, payload, _ = token.split(".")
        assert auth.authenticate(f"Bearer {header}.{payload}.forged") is None

    def test_other_secret_rejected(self, store):
        user = store.create_user("t@example.com")
        token = AuthService(store, make_settings(jwt_secret="another-secret-entirely-abcdefghijk")).issue_token(user)
        assert AuthService(store, make_settings()).authenticate(f"Bearer {token}") is None

    def test_expired_token(self, auth, store):
        user = store.create_user("t@example.com")
        expired = auth._encode_jwt(
            {
                "iss": auth.settings.jwt_issuer,
                "aud": auth.settings.jwt_audience,
                "sub": user.id,
                "role": user.role,
                "exp": int(time.time()) - 3600,
            }
        )
        assert auth.authenticate(f"Bearer {expired}") is None

    def test_non_hs256_header_rejected(self, auth, store):
        user = store.create_user("t@example.com")
        token = auth.issue_token(user)
        _, payload, _ = token.split(".")
        header = auth._encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        signature = auth._sign(f"{header}.{payload}")
        assert auth.authenticate(f"Bearer {header}.{payload}.{signature}") is None

    def test_role_change_invalidates_token(self, auth, store):
        user = store.create_user("t@example.com")
        token = auth.issue_token(user)
        store.update_user_role(user.id, "admin")
        assert auth.authenticate(f"Bearer {token}") is None

    def test_unknown_subject(self, auth, store):
        user = store.create_user("t@example.com")
        token = auth.issue_token(user)
        other = AuthService(MemoryStore(fs_root=str(store.fs_root / "other")), make_settings())
        assert other.authenticate(f"Bearer {token}") is None


class TestModelKeys:
    def test_key_is_sealed_at_rest(self, auth, store):
        user = store.create_user("k@example.com")
        auth.set_model_key(user.id, "  sk-personal-1234  ")

        stored = store.get_user(user.id)
        assert stored.model_key_cipher
        assert "sk-personal" not in stored.model_key_cipher
        assert auth.resolve_model_key(stored) == "sk-personal-1234"

    def test_clear_key(self, auth, store):
        user = store.create_user("k@example.com")
        auth.set_model_key(user.id, "sk-personal-1234")
        cleared = auth.clear_model_key(user.id)
        assert cleared.model_key_cipher is None
        assert auth.resolve_model_key(cleared) is None

    def test_blank_key_rejected(self, auth, store):
        user = store.create_user("k@example.com")
        with pytest.raises(ValidationError):
            auth.set_model_key(user.id, "   ")

    def test_keys_disabled_without_encryption_material(self, store):
        auth = AuthService(store, make_settings(user_key_encryption_key=None))
        user = store.create_user("k@example.com")
        with pytest.raises(ServerError):
            auth.set_model_key(user.id, "sk-personal-1234")

    def test_undecryptable_key_resolves_to_none(self, auth, store):
        user = store.create_user("k@example.com")
        store.set_user_model_key(user.id, "corrupted-cipher")
        assert auth.resolve_model_key(store.get_user(user.id)) is None
