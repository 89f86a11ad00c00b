"""Tests for the Supabase and Nominatim adapters against httpx.MockTransport."""

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest

from pulsemap.adapters.nominatim import NominatimGeocoder
from pulsemap.adapters.supabase import (
    SupabaseBlobStore,
    SupabasePulseBackend,
    change_from_payload,
)
from pulsemap.domain.enums import ChangeOp, CounterField, PulseCategory
from pulsemap.domain.errors import NetworkFailure
from pulsemap.domain.pulse import PulseDraft

from tests.test_pulse import _quick_report, _valid_pulse

_URL = "https://demo.supabase.co"


class _Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def _backend(recorder: _Recorder) -> SupabasePulseBackend:
    return SupabasePulseBackend(_URL, "anon-key", transport=recorder.transport)


class TestChangeFromPayload:
    def test_insert(self) -> None:
        row = _valid_pulse()
        event = change_from_payload({"type": "INSERT", "record": row})
        assert event.op == ChangeOp.INSERT
        assert event.pulse_id == row["id"]

    def test_update(self) -> None:
        row = _valid_pulse(respect_count=4)
        event = change_from_payload({"type": "UPDATE", "record": row})
        assert event.op == ChangeOp.UPDATE
        assert event.pulse.respect_count == 4

    def test_delete_uses_old_record(self) -> None:
        event = change_from_payload({"type": "DELETE", "old_record": {"id": "gone"}})
        assert event.op == ChangeOp.DELETE
        assert event.pulse_id == "gone"
        assert event.pulse is None

    def test_legacy_row_without_category(self) -> None:
        row = _valid_pulse()
        del row["category"]
        row["respect_count"] = None
        event = change_from_payload({"type": "INSERT", "record": row})
        assert event.pulse.category == PulseCategory.CHAT
        assert event.pulse.respect_count == 0

    def test_malformed_rows_are_skipped(self) -> None:
        assert change_from_payload({"type": "INSERT", "record": {"id": "x"}}) is None
        assert change_from_payload({"type": "DELETE", "old_record": {}}) is None
        assert change_from_payload({"type": "TRUNCATE"}) is None


class TestPulseBackend:
    @pytest.mark.asyncio
    async def test_insert_returns_representation(self) -> None:
        row = _valid_pulse()
        recorder = _Recorder(httpx.Response(201, json=[row]))
        backend = _backend(recorder)

        draft = PulseDraft(lat=row["lat"], lng=row["lng"], energy_value=0.6, audio_url=row["audio_url"])
        pulse = await backend.insert(draft)

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/pulses"
        assert request.headers["Prefer"] == "return=representation"
        assert request.headers["apikey"] == "anon-key"
        body = json.loads(request.content)
        assert body[0]["category"] == "chat"
        assert "id" not in body[0]
        assert pulse.id == row["id"]
        await backend.close()

    @pytest.mark.asyncio
    async def test_select_since_filters_and_skips_bad_rows(self) -> None:
        good = _valid_pulse()
        recorder = _Recorder(httpx.Response(200, json=[good, {"id": "broken"}, _quick_report()]))
        backend = _backend(recorder)

        threshold = datetime(2026, 1, 1, tzinfo=timezone.utc)
        pulses = await backend.select_since(threshold)

        assert len(pulses) == 2
        assert recorder.requests[0].url.params["created_at"] == f"gte.{threshold.isoformat()}"
        await backend.close()

    @pytest.mark.asyncio
    async def test_increment_calls_rpc(self) -> None:
        recorder = _Recorder(httpx.Response(200, json=3))
        backend = _backend(recorder)

        value = await backend.increment_counter("p1", CounterField.DENY)

        request = recorder.requests[0]
        assert request.url.path == "/rest/v1/rpc/increment_pulse_counter"
        assert json.loads(request.content) == {"pulse_id": "p1", "counter": "deny_count"}
        assert value == 3
        await backend.close()

    @pytest.mark.asyncio
    async def test_delete_by_primary_key(self) -> None:
        recorder = _Recorder(httpx.Response(204))
        backend = _backend(recorder)
        await backend.delete("p1")
        request = recorder.requests[0]
        assert request.method == "DELETE"
        assert request.url.params["id"] == "eq.p1"
        await backend.close()

    @pytest.mark.asyncio
    async def test_http_error_becomes_network_failure(self) -> None:
        recorder = _Recorder(httpx.Response(503, text="unavailable"))
        backend = _backend(recorder)
        with pytest.raises(NetworkFailure):
            await backend.update("p1", {"respect_count": 2})
        await backend.close()

    def test_requires_credentials(self) -> None:
        with pytest.raises(ValueError):
            SupabasePulseBackend("", "")

    def test_realtime_join(self) -> None:
        backend = SupabasePulseBackend(_URL, "anon-key")
        assert backend.realtime_url.startswith("wss://demo.supabase.co/realtime/v1/websocket?apikey=anon-key")
        message = backend.join_message()
        assert message["event"] == "phx_join"
        assert message["topic"] == "realtime:public:pulses"
        changes = message["payload"]["config"]["postgres_changes"]
        assert changes == [{"event": "*", "schema": "public", "table": "pulses"}]
        assert backend.join_message()["ref"] != message["ref"]


class TestBlobStore:
    @pytest.mark.asyncio
    async def test_upload_and_public_url(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={"Key": "audio_pulses/a.webm"}))
        blobs = SupabaseBlobStore(_URL, "anon-key", transport=recorder.transport)

        await blobs.upload("a.webm", b"data", "audio/webm")

        request = recorder.requests[0]
        assert request.url.path == "/storage/v1/object/audio_pulses/a.webm"
        assert request.headers["Content-Type"] == "audio/webm"
        url = blobs.public_url("a.webm")
        assert url == f"{_URL}/storage/v1/object/public/audio_pulses/a.webm"
        assert blobs.name_from_url(url) == "a.webm"
        await blobs.close()

    @pytest.mark.asyncio
    async def test_upload_failure(self) -> None:
        recorder = _Recorder(httpx.Response(413))
        blobs = SupabaseBlobStore(_URL, "anon-key", transport=recorder.transport)
        with pytest.raises(NetworkFailure):
            await blobs.upload("a.webm", b"data", "audio/webm")
        await blobs.close()


class TestNominatim:
    @pytest.mark.asyncio
    async def test_prefers_road(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={"address": {"suburb": "Blloku", "road": "Rruga Pjetër Bogdani"}}))
        geocoder = NominatimGeocoder(transport=recorder.transport)

        assert await geocoder.lookup(41.32, 19.82) == "Rruga Pjetër Bogdani"
        params = recorder.requests[0].url.params
        assert params["format"] == "jsonv2"
        assert params["lon"] == "19.82"
        await geocoder.close()

    @pytest.mark.asyncio
    async def test_no_street_raises_lookup_error(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={"address": {"country": "Shqipëria"}}))
        geocoder = NominatimGeocoder(transport=recorder.transport)
        with pytest.raises(LookupError):
            await geocoder.lookup(41.0, 20.0)
        await geocoder.close()

    @pytest.mark.asyncio
    async def test_http_error_is_network_failure(self) -> None:
        recorder = _Recorder(httpx.Response(500))
        geocoder = NominatimGeocoder(transport=recorder.transport)
        with pytest.raises(NetworkFailure):
            await geocoder.lookup(41.0, 20.0)
        await geocoder.close()


class _FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, frames: list, hold: asyncio.Event | None = None) -> None:
        self.frames = [f if isinstance(f, str) else json.dumps(f) for f in frames]
        self.hold = hold
        self.sent: list[dict] = []

    async def __aenter__(self) -> "_FakeSocket":
        return self

    async def __aexit__(self, *exc) -> bool:
        return False

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self._receive()

    async def _receive(self):
        for frame in self.frames:
            yield frame
        if self.hold is not None:
            await self.hold.wait()


def _changes(change_type: str, **data) -> dict:
    return {
        "topic": "realtime:public:pulses",
        "event": "postgres_changes",
        "payload": {"data": {"type": change_type, **data}},
    }


def _connect(socket: _FakeSocket):
    return patch("pulsemap.adapters.supabase.websockets.connect", return_value=socket)


class TestRealtimeSubscribe:
    @pytest.mark.asyncio
    async def test_dispatches_postgres_changes(self) -> None:
        row = _valid_pulse()
        socket = _FakeSocket([
            {"event": "phx_reply", "payload": {"status": "ok", "response": {}}},
            {"event": "presence_state", "payload": {}},
            "not json at all",
            _changes("INSERT", record=row),
            _changes("UPDATE", record={"id": "broken"}),
            _changes("DELETE", old_record={"id": row["id"]}),
        ])
        backend = SupabasePulseBackend(_URL, "anon-key")

        with _connect(socket) as connect:
            events = [event async for event in backend.subscribe()]

        assert connect.call_args.args[0] == backend.realtime_url
        assert socket.sent[0]["event"] == "phx_join"
        assert [(e.op, e.pulse_id) for e in events] == [
            (ChangeOp.INSERT, row["id"]),
            (ChangeOp.DELETE, row["id"]),
        ]

    @pytest.mark.asyncio
    async def test_join_error_is_network_failure(self) -> None:
        socket = _FakeSocket([
            {"event": "phx_reply", "payload": {"status": "error", "response": {"reason": "unauthorized"}}},
        ])
        backend = SupabasePulseBackend(_URL, "anon-key")

        with _connect(socket):
            with pytest.raises(NetworkFailure):
                async for _ in backend.subscribe():
                    pass

    @pytest.mark.asyncio
    async def test_connect_error_is_network_failure(self) -> None:
        backend = SupabasePulseBackend(_URL, "anon-key")
        with patch("pulsemap.adapters.supabase.websockets.connect", side_effect=OSError("refused")):
            with pytest.raises(NetworkFailure):
                async for _ in backend.subscribe():
                    pass

    @pytest.mark.asyncio
    async def test_heartbeat_runs_and_stops_with_the_connection(self) -> None:
        hold = asyncio.Event()
        socket = _FakeSocket([], hold=hold)
        backend = SupabasePulseBackend(_URL, "anon-key")

        async def consume() -> None:
            async for _ in backend.subscribe():
                pass

        with _connect(socket), patch("pulsemap.adapters.supabase.HEARTBEAT_SECONDS", 0.01):
            task = asyncio.create_task(consume())
            await asyncio.sleep(0.05)
            assert any(m["event"] == "heartbeat" for m in socket.sent)

            hold.set()
            await task
            sent = len(socket.sent)
            await asyncio.sleep(0.05)

        assert len(socket.sent) == sent


class TestUndecodableResponses:
    @pytest.mark.asyncio
    async def test_html_body_is_network_failure(self) -> None:
        recorder = _Recorder(httpx.Response(200, text="<html>gateway hiccup</html>"))
        backend = _backend(recorder)
        with pytest.raises(NetworkFailure):
            await backend.select_since(datetime(2026, 1, 1, tzinfo=timezone.utc))
        await backend.close()

    @pytest.mark.asyncio
    async def test_object_instead_of_rows_is_network_failure(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={"message": "oops"}))
        backend = _backend(recorder)
        with pytest.raises(NetworkFailure):
            await backend.select_since(datetime(2026, 1, 1, tzinfo=timezone.utc))
        await backend.close()

    @pytest.mark.asyncio
    async def test_malformed_insert_row_is_network_failure(self) -> None:
        recorder = _Recorder(httpx.Response(201, json=[{"id": "x"}]))
        backend = _backend(recorder)
        with pytest.raises(NetworkFailure):
            await backend.insert(PulseDraft(lat=41.0, lng=20.0, energy_value=0.5, audio_url="memory://a/x.webm"))
        await backend.close()

    @pytest.mark.asyncio
    async def test_geocoder_html_body_is_network_failure(self) -> None:
        recorder = _Recorder(httpx.Response(200, text="<html>rate limited</html>"))
        geocoder = NominatimGeocoder(transport=recorder.transport)
        with pytest.raises(NetworkFailure):
            await geocoder.lookup(41.0, 20.0)
        await geocoder.close()
