"""Tests for error classification."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from llm_relay.errors import (
    ErrorKind,
    ProviderHTTPError,
    ProviderStreamError,
    RequestCancelled,
    RequestTimeout,
    classify_error,
    describe_error,
    is_retryable,
)


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://test")
    response = httpx.Response(status_code=code, request=request)
    return httpx.HTTPStatusError("error", request=request, response=response)


class TestClassifyByType:
    def test_cancelled(self):
        assert classify_error(RequestCancelled()) is ErrorKind.CANCELLED
        assert classify_error(asyncio.CancelledError()) is ErrorKind.CANCELLED

    def test_timeout(self):
        assert classify_error(RequestTimeout("timeout after 5s")) is ErrorKind.TIMEOUT
        assert classify_error(httpx.ReadTimeout("read")) is ErrorKind.TIMEOUT
        assert classify_error(asyncio.TimeoutError()) is ErrorKind.TIMEOUT

    def test_network(self):
        assert classify_error(httpx.ConnectError("refused")) is ErrorKind.NETWORK_UNAVAILABLE
        assert classify_error(ConnectionResetError()) is ErrorKind.NETWORK_UNAVAILABLE

    @pytest.mark.parametrize("status,kind", [
        (429, ErrorKind.RATE_LIMITED),
        (401, ErrorKind.AUTH_FAILED),
        (403, ErrorKind.AUTH_FAILED),
        (504, ErrorKind.TIMEOUT),
    ])
    def test_provider_http_status(self, status: int, kind: ErrorKind):
        assert classify_error(ProviderHTTPError(status, "body")) is kind
        assert classify_error(_status_error(status)) is kind

    def test_plain_server_error_is_unknown(self):
        assert classify_error(ProviderHTTPError(500, "oops")) is ErrorKind.UNKNOWN

    def test_stream_error_keeps_kind(self):
        exc = ProviderStreamError("slow down", ErrorKind.RATE_LIMITED)
        assert classify_error(exc) is ErrorKind.RATE_LIMITED


class TestClassifyByMessage:
    @pytest.mark.parametrize("message,kind", [
        ("Request was aborted", ErrorKind.CANCELLED),
        ("Rate limit reached for model", ErrorKind.RATE_LIMITED),
        ("Invalid API key provided", ErrorKind.AUTH_FAILED),
        ("operation timed out", ErrorKind.TIMEOUT),
        ("ECONNREFUSED 127.0.0.1", ErrorKind.NETWORK_UNAVAILABLE),
        ("something odd happened", ErrorKind.UNKNOWN),
    ])
    def test_substrings(self, message: str, kind: ErrorKind):
        assert classify_error(RuntimeError(message)) is kind


class TestRetryable:
    def test_retryable(self):
        assert is_retryable(ProviderHTTPError(429))
        assert is_retryable(ProviderHTTPError(503))
        assert is_retryable(httpx.ConnectError("refused"))
        assert is_retryable(httpx.ReadTimeout("read"))

    def test_not_retryable(self):
        assert not is_retryable(RequestCancelled())
        assert not is_retryable(ProviderHTTPError(401))
        assert not is_retryable(ProviderHTTPError(400, "bad request"))
        assert not is_retryable(ValueError("bad input"))


class TestMessages:
    def test_http_error_message(self):
        exc = ProviderHTTPError(404, "not found", "http://x/v1/chat/completions")
        assert exc.status_code == 404
        assert "HTTP 404" in str(exc)
        assert "not found" in str(exc)

    def test_http_error_body_truncated(self):
        exc = ProviderHTTPError(500, "x" * 2000)
        assert len(str(exc)) < 600

    def test_describe_error(self):
        text = describe_error(ErrorKind.RATE_LIMITED, ProviderHTTPError(429, "slow"))
        assert text.startswith("Rate limit exceeded")
        assert describe_error(ErrorKind.UNKNOWN, ValueError("plain")) == "plain"
        assert describe_error(ErrorKind.UNKNOWN, ValueError()) == "ValueError"
