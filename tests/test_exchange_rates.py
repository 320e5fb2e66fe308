import pytest
import requests

from exchange_rates import (
    OPEN_EXCHANGE_RATES_URL,
    ExchangeRateFetchError,
    ExchangeRatesClient,
    NoApiKeyError,
)
from tests.fakes import FakeClock, FakeResponse, FakeSession

LATEST = {"base": "USD", "timestamp": 1700000000, "rates": {"EUR": 0.92, "krw": 1350, "BTC": "n/a"}}


def make_client(*responses, clock=None):
    return ExchangeRatesClient("app-123", session=FakeSession(list(responses)), ttl=60, clock=clock or FakeClock())


def test_fetches_and_normalizes_rates() -> None:
    client = make_client(FakeResponse(200, LATEST))

    rates = client.get_rates()

    assert rates.rates == {"EUR": 0.92, "KRW": 1350.0}
    assert rates.timestamp == 1700000000
    assert not rates.stale
    [call] = client.session.calls
    assert call["url"] == OPEN_EXCHANGE_RATES_URL
    assert call["params"] == {"app_id": "app-123"}


def test_cached_until_ttl_expires() -> None:
    clock = FakeClock()
    client = make_client(FakeResponse(200, LATEST), FakeResponse(200, LATEST), clock=clock)

    client.get_rates()
    client.get_rates()
    assert len(client.session.calls) == 1

    clock.advance(61)
    client.get_rates()
    assert len(client.session.calls) == 2


def test_force_refresh_bypasses_cache() -> None:
    client = make_client(FakeResponse(200, LATEST), FakeResponse(200, LATEST))
    client.get_rates()
    client.get_rates(force_refresh=True)
    assert len(client.session.calls) == 2


def test_failed_refresh_serves_stale_rates() -> None:
    clock = FakeClock()
    client = make_client(FakeResponse(200, LATEST), FakeResponse(503, text="unavailable"), clock=clock)
    client.get_rates()
    clock.advance(61)

    rates = client.get_rates()

    assert rates.stale
    assert rates.rates["EUR"] == 0.92


def test_failure_without_cache_raises() -> None:
    client = make_client(requests.exceptions.ConnectionError("offline"))
    with pytest.raises(ExchangeRateFetchError):
        client.get_rates()


def test_error_status_is_kept() -> None:
    client = make_client(FakeResponse(401, {"error": True, "message": "invalid_app_id"}))
    with pytest.raises(ExchangeRateFetchError) as excinfo:
        client.get_rates()
    assert excinfo.value.status_code == 401


def test_missing_app_id(monkeypatch) -> None:
    monkeypatch.delenv("OPEN_EXCHANGE_RATES_APP_ID", raising=False)
    client = ExchangeRatesClient(session=FakeSession())

    with pytest.raises(NoApiKeyError):
        client.get_rates()
    assert client.rates_or_none() is None


def test_rates_or_none_hides_fetch_errors() -> None:
    client = make_client(FakeResponse(200, {"base": "USD", "rates": {}}))
    assert client.rates_or_none() is None
