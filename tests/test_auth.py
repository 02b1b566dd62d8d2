"""
Tests for the bearer-token gate.
"""
import os

import pytest

from toolgate.auth import TokenAuthenticator, parse_tokens
from toolgate.errors import AuthForbiddenError, AuthMissingError, AuthUnavailableError


def write_tokens(path, content, bump_ns=0):
    path.write_text(content, encoding="utf-8")
    if bump_ns:
        stat = os.stat(path)
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + bump_ns))


@pytest.fixture
def token_file(tmp_path):
    path = tmp_path / "tokens.txt"
    write_tokens(path, "# gateway clients\nalpha-token-123\n\n  beta-token-456  \n")
    return path


class TestParseTokens:
    """Tests for parse_tokens."""

    def test_comments_and_blank_lines_ignored(self):
        tokens = parse_tokens("# comment\n\nabc\n  def  \n#ghi\n")
        assert tokens == frozenset({"abc", "def"})

    def test_empty_file(self):
        assert parse_tokens("") == frozenset()


class TestTokenAuthenticator:
    """Tests for TokenAuthenticator."""

    def test_disabled_without_path(self):
        auth = TokenAuthenticator()
        auth.initialize(None)
        assert auth.enabled is False
        # Anything goes, including no header at all
        auth.check(None)
        auth.check("Bearer whatever")

    def test_disabled_when_file_missing(self, tmp_path):
        auth = TokenAuthenticator()
        auth.initialize(str(tmp_path / "nope.txt"))
        assert auth.enabled is False
        auth.check(None)

    def test_valid_token_with_and_without_bearer(self, token_file):
        auth = TokenAuthenticator()
        auth.initialize(str(token_file))
        assert auth.enabled is True
        auth.check("Bearer alpha-token-123")
        auth.check("beta-token-456")

    def test_missing_header(self, token_file):
        auth = TokenAuthenticator()
        auth.initialize(str(token_file))
        with pytest.raises(AuthMissingError) as exc:
            auth.check(None)
        assert exc.value.status_code == 401
        assert exc.value.to_payload()["error"] == "Unauthorized"

    def test_unknown_token(self, token_file):
        auth = TokenAuthenticator()
        auth.initialize(str(token_file))
        with pytest.raises(AuthForbiddenError) as exc:
            auth.check("Bearer not-a-token")
        assert exc.value.status_code == 403

    def test_empty_file_denies_everyone(self, tmp_path):
        path = tmp_path / "tokens.txt"
        write_tokens(path, "# nobody yet\n")
        auth = TokenAuthenticator()
        auth.initialize(str(path))
        with pytest.raises(AuthUnavailableError) as exc:
            auth.check("Bearer alpha-token-123")
        assert exc.value.status_code == 503

    def test_hot_reload_on_next_check(self, token_file):
        auth = TokenAuthenticator()
        auth.initialize(str(token_file))
        auth.check("Bearer alpha-token-123")

        write_tokens(token_file, "gamma-token-789\n", bump_ns=1_000_000_000)

        auth.check("Bearer gamma-token-789")
        with pytest.raises(AuthForbiddenError):
            auth.check("Bearer alpha-token-123")

    def test_unchanged_file_not_reparsed(self, token_file):
        auth = TokenAuthenticator()
        auth.initialize(str(token_file))
        before = auth.tokens
        auth.check("Bearer alpha-token-123")
        assert auth.tokens is before

    def test_read_failure_clears_tokens(self, token_file):
        auth = TokenAuthenticator()
        auth.initialize(str(token_file))
        token_file.unlink()

        with pytest.raises(AuthUnavailableError):
            auth.check("Bearer alpha-token-123")
        assert auth.tokens == frozenset()
        assert auth.last_mtime is None

        # The file coming back restores access
        write_tokens(token_file, "alpha-token-123\n")
        auth.check("Bearer alpha-token-123")

    async def test_authenticate_async(self, token_file):
        auth = TokenAuthenticator()
        auth.initialize(str(token_file))
        await auth.authenticate("Bearer alpha-token-123")
        with pytest.raises(AuthForbiddenError):
            await auth.authenticate("Bearer nope")


class TestRouteGating:
    """The gate applied to the HTTP routes."""

    async def test_protected_route_requires_token(self, gateway, token_file):
        client = await gateway(proxy_auth_tokens_file=str(token_file))

        resp = await client.get("/v1/models")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized", "message": "Missing Authorization header"}

        resp = await client.get("/v1/models", headers={"Authorization": "Bearer wrong"})
        assert resp.status_code == 403
        assert resp.json()["error"] == "Forbidden"

        resp = await client.get("/v1/models", headers={"Authorization": "Bearer alpha-token-123"})
        assert resp.status_code == 200

    async def test_info_route_is_open(self, gateway, token_file):
        client = await gateway(proxy_auth_tokens_file=str(token_file))
        resp = await client.get("/")
        assert resp.status_code == 200

    async def test_backend_receives_server_key_not_gateway_token(self, gateway, fake_backend, token_file):
        client = await gateway(proxy_auth_tokens_file=str(token_file))
        resp = await client.get("/v1/models", headers={"Authorization": "Bearer alpha-token-123"})
        assert resp.status_code == 200
        assert fake_backend.last("/v1/models")["headers"]["Authorization"] == "Bearer server-key"

    async def test_client_key_forwarded_when_gate_disabled(self, gateway, fake_backend):
        client = await gateway()
        resp = await client.get("/v1/models", headers={"Authorization": "Bearer client-key"})
        assert resp.status_code == 200
        assert fake_backend.last("/v1/models")["headers"]["Authorization"] == "Bearer client-key"
