import pytest
from structlog.testing import capture_logs
from yarl import URL

from origin_proxy.config import (
    DEFAULT_ALLOWED_HEADERS,
    ConfigError,
    InvalidTargetError,
    MissingTargetError,
    ProxyConfig,
    parse_allowed_headers,
    parse_custom_headers,
    resolve_config,
)


def test_resolve_minimal():
    config = resolve_config({"TARGET_URL": "http://backend.example:8096"})

    assert config.target_url == URL("http://backend.example:8096")
    assert config.allowed_request_headers == DEFAULT_ALLOWED_HEADERS
    assert dict(config.custom_response_headers) == {}
    assert config.debug is False


def test_resolve_all_keys():
    config = resolve_config(
        {
            "TARGET_URL": "https://api.example.com",
            "ALLOWED_HEADERS": "Authorization, X-Trace ,Accept",
            "CUSTOM_HEADERS": '{"X-Powered-By": "proxy"}',
            "PROXY_DEBUG": "true",
        }
    )

    assert config.allowed_request_headers == {"authorization", "x-trace", "accept"}
    assert config.custom_response_headers == {"X-Powered-By": "proxy"}
    assert config.debug is True


@pytest.mark.parametrize("env", [{}, {"TARGET_URL": ""}])
def test_missing_target(env):
    with pytest.raises(MissingTargetError, match="TARGET_URL environment variable is not set"):
        resolve_config(env)


@pytest.mark.parametrize("raw", ["not a url", "/relative/path", "ftp://files.example", "http://"])
def test_invalid_target(raw):
    with pytest.raises(InvalidTargetError) as exc_info:
        resolve_config({"TARGET_URL": raw})

    assert isinstance(exc_info.value, ConfigError)
    assert exc_info.value.raw_value == raw
    assert str(exc_info.value) == f"Invalid TARGET_URL: {raw}"


@pytest.mark.parametrize("flag", ["1", "TRUE", "yes", ""])
def test_debug_requires_exact_true(flag):
    config = resolve_config({"TARGET_URL": "http://backend", "PROXY_DEBUG": flag})
    assert config.debug is False


@pytest.mark.parametrize("raw", [None, "", " , ,"])
def test_allowed_headers_fallback(raw):
    assert parse_allowed_headers(raw) == DEFAULT_ALLOWED_HEADERS


def test_custom_headers_coerces_values():
    parsed = parse_custom_headers('{"X-Foo": "bar", "X-Num": 1, "X-Flag": true}')
    assert parsed == {"X-Foo": "bar", "X-Num": "1", "X-Flag": "true"}


@pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '"text"', "42", "null"])
def test_custom_headers_lenient(raw):
    assert parse_custom_headers(raw) == {}


def test_malformed_custom_headers_do_not_fail_resolution():
    config = resolve_config({"TARGET_URL": "http://backend", "CUSTOM_HEADERS": "{oops"})
    assert dict(config.custom_response_headers) == {}


def test_config_is_immutable():
    config = resolve_config({"TARGET_URL": "http://backend", "CUSTOM_HEADERS": '{"X-A": "1"}'})

    with pytest.raises(AttributeError):
        config.debug = True
    with pytest.raises(TypeError):
        config.custom_response_headers["X-B"] = "2"


@pytest.mark.parametrize(
    "target, host",
    [
        ("http://backend.example", "backend.example"),
        ("http://backend.example:80/base", "backend.example"),
        ("https://backend.example:443", "backend.example"),
        ("http://192.168.1.100:3000", "192.168.1.100:3000"),
        ("https://backend.example:8443", "backend.example:8443"),
    ],
)
def test_target_host(target, host):
    assert ProxyConfig(target_url=URL(target)).target_host == host


def test_target_origin_uses_effective_port():
    assert ProxyConfig(target_url=URL("https://Backend.example/x")).target_origin == (
        "https",
        "backend.example",
        443,
    )


def test_target_raw_kept_as_written():
    config = resolve_config({"TARGET_URL": "http://LocalHost:8096"})

    assert config.target_raw == "http://LocalHost:8096"
    assert config.target_url.host == "localhost"


@pytest.mark.parametrize("debug, expected", [(False, []), (True, ["custom_headers_parse_error"])])
def test_custom_headers_parse_log_follows_debug(debug, expected):
    with capture_logs() as logs:
        assert parse_custom_headers("{oops", debug) == {}

    assert [entry["event"] for entry in logs] == expected
