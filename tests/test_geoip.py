import requests

from pricetest import config, geoip


class _FakeResponse:
    def __init__(self, payload, status_ok=True):
        self._payload = payload
        self._status_ok = status_ok

    def raise_for_status(self):
        if not self._status_ok:
            raise requests.HTTPError("503 Service Unavailable")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def test_header_country_wins(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("lookup should not run")

    monkeypatch.setattr(geoip.requests, "get", fail)
    monkeypatch.setattr(config, "GEOIP_ENABLED", True)
    assert geoip.resolve_country({"cf-ipcountry": "CA"}) == "CA"


def test_lookup_uses_first_forwarded_ip(monkeypatch):
    calls = []

    def fake_get(url, timeout):
        calls.append((url, timeout))
        return _FakeResponse({"country": "DE"})

    monkeypatch.setattr(geoip.requests, "get", fake_get)
    monkeypatch.setattr(config, "GEOIP_ENABLED", True)

    assert geoip.resolve_country({"x-forwarded-for": "5.6.7.8, 10.0.0.1"}) == "DE"
    assert calls[0][0].endswith("/5.6.7.8/json/")
    assert calls[0][1] == config.GEOIP_TIMEOUT


def test_lookup_failures_mean_unknown(monkeypatch):
    def timeout(url, timeout):
        raise requests.Timeout("too slow")

    monkeypatch.setattr(geoip.requests, "get", timeout)
    assert geoip.lookup_country("1.2.3.4") is None

    monkeypatch.setattr(geoip.requests, "get", lambda url, timeout: _FakeResponse({}, status_ok=False))
    assert geoip.lookup_country("1.2.3.4") is None

    monkeypatch.setattr(geoip.requests, "get", lambda url, timeout: _FakeResponse(ValueError("not json")))
    assert geoip.lookup_country("1.2.3.4") is None

    monkeypatch.setattr(geoip.requests, "get", lambda url, timeout: _FakeResponse({"error": True}))
    assert geoip.lookup_country("1.2.3.4") is None


def test_disabled_lookup(monkeypatch):
    monkeypatch.setattr(config, "GEOIP_ENABLED", False)
    assert geoip.resolve_country({"x-forwarded-for": "5.6.7.8"}) is None
