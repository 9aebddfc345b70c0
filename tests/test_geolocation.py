"""Tests for best-effort geolocation capture."""

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest

from signflow.config import SignflowConfig
from signflow.geolocation import (
    GeolocationCapture,
    LocationErrorCode,
    NominatimGeocoder,
    PositionError,
    PositionOptions,
    StaticPositionSource,
)


class _DeniedSource:
    async def get_current_position(self, options):
        raise PositionError(LocationErrorCode.PERMISSION_DENIED)


class _BrokenSource:
    async def get_current_position(self, options):
        raise RuntimeError("bridge crashed")


class _SlowSource:
    async def get_current_position(self, options):
        await asyncio.sleep(10)


class _RecordingSource:
    def __init__(self):
        self.options = None

    async def get_current_position(self, options):
        self.options = options
        return await StaticPositionSource(1.0, 2.0).get_current_position(options)


class _FixedGeocoder:
    def __init__(self, address="Av. Paulista, 1000, Sao Paulo"):
        self.address = address
        self.calls = []

    def reverse(self, latitude, longitude):
        self.calls.append((latitude, longitude))
        return self.address


class _FailingGeocoder:
    def reverse(self, latitude, longitude):
        raise RuntimeError("service down")


class TestCapture:
    """capture() never raises for device failures."""

    def test_success_with_address(self):
        geocoder = _FixedGeocoder()
        capture = GeolocationCapture(StaticPositionSource(-23.56, -46.65), geocoder)
        result = asyncio.run(capture.capture())
        assert result.ok
        assert result.location.latitude == -23.56
        assert result.location.longitude == -46.65
        assert result.location.address == "Av. Paulista, 1000, Sao Paulo"
        assert geocoder.calls == [(-23.56, -46.65)]

    def test_permission_denied(self):
        result = asyncio.run(GeolocationCapture(_DeniedSource()).capture())
        assert result.error == LocationErrorCode.PERMISSION_DENIED
        assert "sign anyway" in result.message
        assert result.location.is_empty

    def test_timeout(self):
        result = asyncio.run(GeolocationCapture(_SlowSource()).capture(timeout_ms=20))
        assert result.error == LocationErrorCode.TIMEOUT
        assert result.location.is_empty

    def test_unexpected_source_failure_is_unavailable(self):
        result = asyncio.run(GeolocationCapture(_BrokenSource()).capture())
        assert result.error == LocationErrorCode.POSITION_UNAVAILABLE
        assert "sign anyway" in result.message
        assert result.location.is_empty

    def test_unsupported(self):
        result = asyncio.run(GeolocationCapture(None).capture())
        assert result.error == LocationErrorCode.UNSUPPORTED

    def test_geocoder_failure_keeps_coordinates(self):
        capture = GeolocationCapture(StaticPositionSource(1.5, 2.5), _FailingGeocoder())
        result = asyncio.run(capture.capture())
        assert result.ok
        assert result.location.latitude == 1.5
        assert result.location.address is None

    def test_requests_fresh_high_accuracy_fix(self):
        source = _RecordingSource()
        asyncio.run(GeolocationCapture(source).capture(timeout_ms=5000))
        assert source.options == PositionOptions(
            enable_high_accuracy=True, timeout_ms=5000, maximum_age_ms=0
        )


def _response(payload) -> MagicMock:
    resp = MagicMock()
    resp.read.return_value = json.dumps(payload).encode("utf-8")
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    return resp


class TestNominatimGeocoder:
    """HTTP reverse geocoding."""

    def test_display_name(self):
        geocoder = NominatimGeocoder(url="https://geo.example/reverse", user_agent="signflow-test")
        with patch("urllib.request.urlopen", return_value=_response({"display_name": "Rua A, 10"})) as urlopen:
            assert geocoder.reverse(-23.5, -46.6) == "Rua A, 10"
        req = urlopen.call_args[0][0]
        assert req.full_url.startswith("https://geo.example/reverse?")
        assert "format=jsonv2" in req.full_url
        assert req.get_header("User-agent") == "signflow-test"

    def test_no_match(self):
        with patch("urllib.request.urlopen", return_value=_response({"error": "Unable to geocode"})):
            assert NominatimGeocoder().reverse(0.0, 0.0) is None

    def test_http_failure_raises(self):
        with patch("urllib.request.urlopen", side_effect=OSError("unreachable")):
            with pytest.raises(RuntimeError, match="Reverse geocoding failed"):
                NominatimGeocoder().reverse(0.0, 0.0)

    def test_capture_with_nominatim_failure(self):
        capture = GeolocationCapture(StaticPositionSource(1.0, 2.0), NominatimGeocoder())
        with patch("urllib.request.urlopen", side_effect=OSError("unreachable")):
            result = asyncio.run(capture.capture())
        assert result.ok
        assert result.location.address is None


class TestFromConfig:
    def test_geocoder_settings(self):
        config = SignflowConfig(
            geocoder_url="https://geo.example/reverse",
            geocoder_timeout_seconds=2.0,
            geocoder_user_agent="signflow-test",
        )
        capture = GeolocationCapture.from_config(StaticPositionSource(1.0, 2.0), config)
        assert capture.geocoder_timeout_seconds == 2.0
        with patch("urllib.request.urlopen", return_value=_response({"display_name": "Rua B"})) as urlopen:
            result = asyncio.run(capture.capture())
        assert result.location.address == "Rua B"
        req = urlopen.call_args[0][0]
        assert req.full_url.startswith("https://geo.example/reverse?")
        assert req.get_header("User-agent") == "signflow-test"
        assert urlopen.call_args[1]["timeout"] == 2.0
