"""Unit tests for RTMP destination configuration and validation."""
import asyncio
import socket
import pytest
from studio.core.config import Settings
from studio.core.errors import EncoderStartFailure
from studio.relay.rtmp import NOT_CONFIGURED_MESSAGE, is_literal_host, validate_rtmp_target


def test_final_rtmp_url_prefers_explicit_url():
    """Test that RTMP_URL wins over host and key."""
    config = Settings(rtmp_url="rtmp://a.example/live/k", rtmp_host="b.example", rtmp_key="other")
    assert config.final_rtmp_url == "rtmp://a.example/live/k"


def test_final_rtmp_url_from_parts():
    """Test host + app + key composition with an encoded key."""
    config = Settings(rtmp_url="", rtmp_host="live.example", rtmp_app="live", rtmp_key="a/b c", rtmp_port="")
    assert config.final_rtmp_url == "rtmp://live.example/live/a%2Fb%20c"
    
    config = Settings(rtmp_url="", rtmp_host="live.example", rtmp_app="app", rtmp_key="k", rtmp_port="1935")
    assert config.final_rtmp_url == "rtmp://live.example:1935/app/k"


def test_final_rtmp_url_empty_without_key():
    config = Settings(rtmp_url="", rtmp_host="live.example", rtmp_key="")
    assert config.final_rtmp_url == ""


def test_is_literal_host():
    assert is_literal_host("localhost")
    assert is_literal_host("127.0.0.1")
    assert is_literal_host("::1")
    assert not is_literal_host("live.example.com")


def test_validate_rejects_unset_destination():
    """Test that an empty URL fails with the configuration hint."""
    with pytest.raises(EncoderStartFailure) as error:
        asyncio.run(validate_rtmp_target(""))
    assert error.value.message == NOT_CONFIGURED_MESSAGE


def test_validate_rejects_wrong_scheme():
    with pytest.raises(EncoderStartFailure) as error:
        asyncio.run(validate_rtmp_target("http://127.0.0.1/live/key"))
    assert error.value.message == "URL deve começar com rtmp://"


def test_validate_rejects_malformed_url():
    with pytest.raises(EncoderStartFailure) as error:
        asyncio.run(validate_rtmp_target("rtmp:///live/key"))
    assert error.value.message == "URL RTMP inválida. Verifique o formato."


def test_validate_skips_lookup_for_literal_hosts():
    """Test that IP and localhost destinations are accepted without DNS."""
    async def never_called(hostname):
        raise AssertionError(f"unexpected lookup of {hostname}")
    
    for url in ("rtmp://127.0.0.1/live/key", "rtmp://localhost:1935/live/key", "rtmp://[::1]/live/key"):
        assert asyncio.run(validate_rtmp_target(url, never_called)) == url


def test_validate_reports_unresolvable_host():
    """Test that a failed lookup names the host in the error."""
    async def failing_lookup(hostname):
        raise socket.gaierror(-2, "Name or service not known")
    
    with pytest.raises(EncoderStartFailure) as error:
        asyncio.run(validate_rtmp_target("rtmp://nowhere.invalid/live/key", failing_lookup))
    assert "nowhere.invalid" in error.value.message


def test_validate_accepts_resolvable_host():
    lookups = []
    
    async def lookup(hostname):
        lookups.append(hostname)
        return [("addr",)]
    
    url = "rtmp://live.example.com/live/key"
    assert asyncio.run(validate_rtmp_target(url, lookup)) == url
    assert lookups == ["live.example.com"]
