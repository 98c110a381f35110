"""Tests for the reputation client and its response envelope."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from conftest import CHECK_URL, make_client

from bleedguard_proxy.errors import MalformedResponse
from bleedguard_proxy.inspector import DEFAULT_CHECK_URL, ReputationClient, Verdict, parse_envelope


class TestParseEnvelope:
    def test_code_one_is_not_vulnerable(self):
        assert parse_envelope(b'{"code": 1}') is Verdict.NOT_VULNERABLE

    def test_other_code_is_vulnerable(self):
        assert parse_envelope(b'{"code": 0}') is Verdict.VULNERABLE
        assert parse_envelope(b'{"code": 2, "error": "x"}') is Verdict.VULNERABLE

    def test_missing_code_is_vulnerable_by_default(self):
        assert parse_envelope(b'{"status": "ok"}') is Verdict.VULNERABLE

    def test_bool_code_is_not_a_pass(self):
        assert parse_envelope(b'{"code": true}') is Verdict.VULNERABLE

    def test_missing_code_is_malformed_when_strict(self):
        with pytest.raises(MalformedResponse):
            parse_envelope(b'{"status": "ok"}', strict=True)
        with pytest.raises(MalformedResponse):
            parse_envelope(b'{"code": "1"}', strict=True)

    def test_strict_keeps_integer_codes(self):
        assert parse_envelope(b'{"code": 1}', strict=True) is Verdict.NOT_VULNERABLE
        assert parse_envelope(b'{"code": 0}', strict=True) is Verdict.VULNERABLE

    @pytest.mark.parametrize("body", [b"", b"not json", b"{\"code\": 1", b"[1]", b"1", b"\xff\xfe"])
    def test_malformed_bodies(self, body):
        with pytest.raises(MalformedResponse):
            parse_envelope(body)


class TestReputationClientConfig:
    def test_env_defaults(self, monkeypatch):
        monkeypatch.delenv("BLEED_CHECK_URL", raising=False)
        monkeypatch.setenv("BLEED_CHECK_TIMEOUT", "4")
        monkeypatch.setenv("BLEED_STRICT_ENVELOPE", "true")
        client = ReputationClient()
        assert client.url == DEFAULT_CHECK_URL
        assert client.timeout_s == 4.0
        assert client.strict is True
        assert client.max_body == 65536

    def test_host_is_appended_encoded(self):
        client = ReputationClient(url=CHECK_URL + "/")
        assert client.url_for("good.example") == CHECK_URL + "/good.example"
        assert client.url_for("a/b?c") == CHECK_URL + "/a%2Fb%3Fc"


class TestVerdict:
    async def test_not_vulnerable(self):
        client = make_client({"good.example": {"code": 1}})
        assert await client.verdict("good.example") is Verdict.NOT_VULNERABLE

    async def test_vulnerable(self):
        client = make_client({"bad.example": {"code": 0}})
        assert await client.verdict("bad.example") is Verdict.VULNERABLE

    async def test_connection_error_is_service_error(self):
        client = make_client({"flaky.example": httpx.ConnectError("refused")})
        assert await client.verdict("flaky.example") is Verdict.SERVICE_ERROR

    async def test_non_2xx_is_service_error(self):
        client = make_client({"good.example": httpx.Response(503, json={"code": 1})})
        assert await client.verdict("good.example") is Verdict.SERVICE_ERROR

    async def test_malformed_body_is_service_error(self):
        client = make_client({"good.example": b"<html>oops</html>"})
        assert await client.verdict("good.example") is Verdict.SERVICE_ERROR

    async def test_strict_missing_code_is_service_error(self):
        client = make_client({"good.example": {"status": "?"}}, strict=True)
        assert await client.verdict("good.example") is Verdict.SERVICE_ERROR

    async def test_timeout_is_service_error(self):
        async def slow(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={"code": 0})

        client = ReputationClient(url=CHECK_URL, timeout_s=0.05, transport=httpx.MockTransport(slow))
        assert await client.verdict("slow.example") is Verdict.SERVICE_ERROR

    async def test_request_is_anonymous(self):
        seen = []
        client = make_client({"good.example": {"code": 1}}, seen=seen)
        await client.verdict("good.example")
        await client.verdict("good.example")

        assert len(seen) == 2
        for request in seen:
            assert request.method == "GET"
            assert str(request.url) == CHECK_URL + "/good.example"
            assert "cookie" not in request.headers
            assert "authorization" not in request.headers

    async def test_cookies_do_not_carry_over(self):
        seen = []
        client = make_client(
            {"good.example": httpx.Response(200, json={"code": 1}, headers={"Set-Cookie": "sid=abc"})},
            seen=seen,
        )
        await client.verdict("good.example")
        await client.verdict("good.example")
        assert "cookie" not in seen[1].headers

    async def test_chunked_body_is_collected(self):
        async def chunked(request):
            async def body():
                yield b'{"co'
                yield b'de": '
                yield b"1}"

            return httpx.Response(200, content=body())

        client = ReputationClient(url=CHECK_URL, transport=httpx.MockTransport(chunked))
        assert await client.verdict("good.example") is Verdict.NOT_VULNERABLE

    async def test_oversized_body_is_service_error(self):
        client = make_client({"big.example": b'{"code": 1, "pad": "' + b"x" * 200 + b'"}'}, max_body=64)
        assert await client.verdict("big.example") is Verdict.SERVICE_ERROR

    async def test_oversized_body_raises_malformed(self):
        client = make_client({"big.example": b"x" * 200}, max_body=64)
        with pytest.raises(MalformedResponse):
            await client.fetch("big.example")

    async def test_body_at_cap_is_accepted(self):
        body = b'{"code": 1}'
        client = make_client({"good.example": body}, max_body=len(body))
        assert await client.verdict("good.example") is Verdict.NOT_VULNERABLE


class TestCheck:
    async def test_callback_fires_once_with_verdict(self):
        client = make_client({"good.example": {"code": 1}})
        got = []
        task = client.check("good.example", got.append)
        await task
        await asyncio.sleep(0)
        assert got == [Verdict.NOT_VULNERABLE]

    async def test_callback_gets_service_error_on_failure(self):
        client = make_client({"flaky.example": httpx.ConnectError("refused")})
        got = []
        await client.check("flaky.example", got.append)
        await asyncio.sleep(0)
        assert got == [Verdict.SERVICE_ERROR]

    async def test_callback_error_does_not_escape(self):
        client = make_client({"good.example": {"code": 1}})

        def boom(verdict):
            raise RuntimeError("callback broke")

        task = client.check("good.example", boom)
        assert await task is Verdict.NOT_VULNERABLE
        await asyncio.sleep(0)

    async def test_checks_for_different_hosts_are_independent(self, responses):
        client = make_client(responses)
        got = {}
        tasks = [
            client.check(host, lambda v, host=host: got.setdefault(host, v))
            for host in ("good.example", "bad.example", "flaky.example")
        ]
        await asyncio.gather(*tasks)
        await asyncio.sleep(0)
        assert got == {
            "good.example": Verdict.NOT_VULNERABLE,
            "bad.example": Verdict.VULNERABLE,
            "flaky.example": Verdict.SERVICE_ERROR,
        }
