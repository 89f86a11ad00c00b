"""Supabase adapters: PostgREST table, Storage bucket and Realtime change feed.

REST calls go through one shared ``httpx.AsyncClient``; the change feed is
a Phoenix channel over ``websockets`` subscribed to ``postgres_changes``
for the pulses table.  Transport errors surface as NetworkFailure.

The atomic counter increment is a Postgres function exposed over RPC:

    create function increment_pulse_counter(pulse_id uuid, counter text)
    returns integer ...
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Optional
from urllib.parse import quote

import httpx
import websockets
from pydantic import ValidationError

from pulsemap.adapters.base import BlobStore, PulseBackend
from pulsemap.domain.enums import ChangeOp, CounterField
from pulsemap.domain.errors import NetworkFailure
from pulsemap.domain.pulse import ChangeEvent, Pulse, PulseDraft

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 25.0

_OPS = {"INSERT": ChangeOp.INSERT, "UPDATE": ChangeOp.UPDATE, "DELETE": ChangeOp.DELETE}


def _auth_headers(api_key: str) -> dict[str, str]:
    return {"apikey": api_key, "Authorization": f"Bearer {api_key}"}


def change_from_payload(data: dict[str, Any]) -> Optional[ChangeEvent]:
    """Translate a ``postgres_changes`` data block into a ChangeEvent.

    Returns None for payloads that cannot be mapped (unknown type, rows
    that fail validation); those are logged and skipped.
    """
    op = _OPS.get(str(data.get("type", "")).upper())
    if op is None:
        logger.debug("Skipping change of type %r", data.get("type"))
        return None

    if op == ChangeOp.DELETE:
        old = data.get("old_record") or {}
        pulse_id = old.get("id")
        if pulse_id is None:
            logger.warning("Delete event without primary key, skipping")
            return None
        return ChangeEvent.delete(str(pulse_id))

    try:
        pulse = Pulse.model_validate(data.get("record") or {})
    except ValidationError as exc:
        logger.warning("Skipping malformed %s row: %s", op.value, exc)
        return None
    return ChangeEvent(op=op, pulse_id=pulse.id, pulse=pulse)


class SupabasePulseBackend(PulseBackend):
    """The ``pulses`` table over PostgREST plus its realtime channel.

    Args:
        url: Project URL, e.g. ``https://abc.supabase.co``.
        api_key: Anon or service key.
        table: Table name.
        increment_rpc: Name of the counter-increment Postgres function.
        timeout: HTTP timeout in seconds.
        transport: Optional httpx transport (tests use MockTransport).
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        table: str = "pulses",
        increment_rpc: str = "increment_pulse_counter",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url or not api_key:
            raise ValueError("Supabase url and api_key are required")
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._table = table
        self._rpc = increment_rpc
        self._client = httpx.AsyncClient(
            base_url=f"{self._url}/rest/v1",
            headers=_auth_headers(api_key),
            timeout=timeout,
            transport=transport,
        )
        self._refs = itertools.count(1)

    # ── Table operations ─────────────────────────────────────────────────

    async def insert(self, draft: PulseDraft) -> Pulse:
        rows = await self._request(
            "insert",
            "POST",
            f"/{self._table}",
            json=[draft.to_row()],
            headers={"Prefer": "return=representation"},
        )
        if not isinstance(rows, list) or not rows:
            raise NetworkFailure("insert", "no row returned")
        try:
            return Pulse.model_validate(rows[0])
        except ValidationError as exc:
            raise NetworkFailure("insert", f"malformed row returned: {exc}") from exc

    async def select_since(self, threshold: datetime) -> list[Pulse]:
        rows = await self._request(
            "select",
            "GET",
            f"/{self._table}",
            params={"select": "*", "created_at": f"gte.{threshold.isoformat()}"},
        )
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise NetworkFailure("select", f"expected a list of rows, got {type(rows).__name__}")
        pulses: list[Pulse] = []
        for row in rows:
            if not isinstance(row, dict):
                logger.warning("Skipping non-object row %r", row)
                continue
            try:
                pulses.append(Pulse.model_validate(row))
            except ValidationError as exc:
                logger.warning("Skipping malformed row %s: %s", row.get("id"), exc)
        return pulses

    async def update(self, pulse_id: str, fields: dict[str, Any]) -> None:
        await self._request(
            "update", "PATCH", f"/{self._table}", params={"id": f"eq.{pulse_id}"}, json=fields,
        )

    async def delete(self, pulse_id: str) -> None:
        await self._request("delete", "DELETE", f"/{self._table}", params={"id": f"eq.{pulse_id}"})

    async def increment_counter(self, pulse_id: str, field: CounterField) -> int:
        result = await self._request(
            "increment",
            "POST",
            f"/rpc/{self._rpc}",
            json={"pulse_id": pulse_id, "counter": field.value},
        )
        try:
            return int(result)
        except (TypeError, ValueError) as exc:
            raise NetworkFailure("increment", f"unexpected RPC result {result!r}") from exc

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NetworkFailure(operation, str(exc)) from exc
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise NetworkFailure(operation, f"undecodable response body: {exc}") from exc

    # ── Realtime ─────────────────────────────────────────────────────────

    @property
    def realtime_url(self) -> str:
        base = self._url.replace("https://", "wss://").replace("http://", "ws://")
        return f"{base}/realtime/v1/websocket?apikey={quote(self._api_key)}&vsn=1.0.0"

    def join_message(self) -> dict[str, Any]:
        return {
            "topic": f"realtime:public:{self._table}",
            "event": "phx_join",
            "payload": {
                "config": {
                    "postgres_changes": [
                        {"event": "*", "schema": "public", "table": self._table},
                    ],
                },
                "access_token": self._api_key,
            },
            "ref": str(next(self._refs)),
        }

    async def subscribe(self) -> AsyncIterator[ChangeEvent]:
        try:
            async with websockets.connect(self.realtime_url) as ws:
                await ws.send(json.dumps(self.join_message()))
                heartbeat = asyncio.create_task(self._heartbeat(ws))
                try:
                    async for raw in ws:
                        try:
                            message = json.loads(raw)
                        except ValueError:
                            logger.warning("Skipping undecodable realtime frame")
                            continue
                        if not isinstance(message, dict):
                            continue
                        event = message.get("event")
                        payload = message.get("payload") or {}
                        if event == "phx_reply" and payload.get("status") == "error":
                            raise NetworkFailure("subscribe", str(payload.get("response")))
                        if event == "postgres_changes":
                            change = change_from_payload(payload.get("data") or {})
                            if change is not None:
                                yield change
                finally:
                    heartbeat.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await heartbeat
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            raise NetworkFailure("subscribe", str(exc)) from exc

    async def _heartbeat(self, ws) -> None:
        while True:
            await asyncio.sleep(HEARTBEAT_SECONDS)
            await ws.send(json.dumps({
                "topic": "phoenix",
                "event": "heartbeat",
                "payload": {},
                "ref": str(next(self._refs)),
            }))


class SupabaseBlobStore(BlobStore):
    """Audio clips in a public Supabase Storage bucket."""

    def __init__(
        self,
        url: str,
        api_key: str,
        bucket: str = "audio_pulses",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url or not api_key:
            raise ValueError("Supabase url and api_key are required")
        self._url = url.rstrip("/")
        self._bucket = bucket
        self._client = httpx.AsyncClient(
            base_url=f"{self._url}/storage/v1",
            headers=_auth_headers(api_key),
            timeout=timeout,
            transport=transport,
        )

    async def upload(self, name: str, data: bytes, content_type: str) -> None:
        try:
            response = await self._client.post(
                f"/object/{self._bucket}/{name}",
                content=data,
                headers={"Content-Type": content_type},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NetworkFailure("upload", str(exc)) from exc

    def public_url(self, name: str) -> str:
        return f"{self._url}/storage/v1/object/public/{self._bucket}/{name}"

    async def delete(self, name: str) -> None:
        try:
            response = await self._client.request(
                "DELETE", f"/object/{self._bucket}", json={"prefixes": [name]},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NetworkFailure("blob_delete", str(exc)) from exc

    async def close(self) -> None:
        await self._client.aclose()
