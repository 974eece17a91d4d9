"""
HTTP stream transport.

This module speaks the service's JSON record API over httpx:
- Appends: POST {endpoint}/v1/streams/{stream}/records with a JSON body
  {"records": [...], "fencing_token"?: b64, "match_seq_num"?: int},
  answered by {"start": {"seq_num"}, "end": {"seq_num"}, "tail": {"seq_num"}}
- Reads: GET on the same path with seq_num/count/bytes query parameters and
  Accept: text/event-stream. Events are "batch" ({"records": [...]}),
  "first_seq_num" / "next_seq_num" ({"seq_num"}), "error" ({"code",
  "message"}), "ping" and "done".

Record bodies and header names/values travel base64-encoded (the request
carries s2-format: base64); the basin is selected by the s2-basin header.

Invariants:
    - Append requests of one channel are issued one at a time, in send order,
      so acknowledgements can never be reordered by the network
    - httpx exceptions never escape; they map to TransportError subclasses
    - Non-2xx responses map to ServiceRejectedError with the service's code

How to change safely:
    - Keep encode/decode helpers symmetric
    - Test against httpx.MockTransport before pointing at a live endpoint
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from ..types import (
    AppendAck,
    AppendBatch,
    FirstSeqNum,
    Header,
    NextSeqNum,
    ReadOutput,
    Record,
    StoredBatch,
    StoredRecord,
)
from .base import (
    ServiceRejectedError,
    TransportConnectionError,
    TransportError,
    TransportTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://aws.s2.dev"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data, validate=True)


def encode_record(record: Record) -> Dict[str, Any]:
    """Encode a record for an append request."""
    return {
        "headers": [[_b64(h.name), _b64(h.value)] for h in record.headers],
        "body": _b64(record.body),
    }


def decode_record(data: Dict[str, Any]) -> StoredRecord:
    """Decode a sequenced record from read output."""
    headers = tuple(Header(_unb64(name), _unb64(value)) for name, value in data.get("headers", []))
    return StoredRecord(
        seq_num=int(data["seq_num"]),
        record=Record(body=_unb64(data.get("body", "")), headers=headers),
    )


def rejection_from_response(response: httpx.Response) -> ServiceRejectedError:
    """Build a ServiceRejectedError from a non-2xx response."""
    code = str(response.status_code)
    message = response.reason_phrase
    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        data = None
    if isinstance(data, dict):
        code = str(data.get("code", code))
        message = str(data.get("message", message))
    elif response.text:
        message = response.text
    return ServiceRejectedError(code, message)


def map_httpx_error(error: httpx.HTTPError) -> TransportError:
    """Map an httpx failure onto the transport error hierarchy."""
    if isinstance(error, httpx.TimeoutException):
        return TransportTimeoutError(f"Request timed out: {error}")
    return TransportConnectionError(f"Request failed: {error}")


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[str, str]]:
    """Parse a server-sent event stream into (event, data) pairs."""
    event = "message"
    data: List[str] = []
    async for line in lines:
        line = line.rstrip("\r\n")
        if not line:
            if data or event != "message":
                yield event, "\n".join(data)
            event = "message"
            data = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)


class HttpStreamHandle:
    """StreamHandle over the service's HTTP record API.

    Attributes:
        basin: Basin the stream lives in
        stream: Stream name

    Example:
        >>> async with httpx.AsyncClient(base_url=endpoint) as client:
        ...     handle = HttpStreamHandle(client, "my-basin", "logs")
        ...     channel = await handle.open_append_session()
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        basin: str,
        stream: str,
        *,
        request_timeout: float = 30.0,
    ) -> None:
        self._client = client
        self.basin = basin
        self.stream = stream
        self._request_timeout = request_timeout

    @property
    def name(self) -> str:
        return f"{self.basin}/{self.stream}"

    @property
    def records_path(self) -> str:
        return f"/v1/streams/{self.stream}/records"

    def request_headers(self) -> Dict[str, str]:
        return {"s2-basin": self.basin, "s2-format": "base64"}

    async def open_append_session(
        self,
        fencing_token: Optional[bytes] = None,
        match_seq_num: Optional[int] = None,
    ) -> HttpAppendChannel:
        return HttpAppendChannel(self, fencing_token, match_seq_num)

    async def open_read_session(
        self,
        start_seq_num: int,
        limit_count: Optional[int] = None,
        limit_bytes: Optional[int] = None,
    ) -> HttpReadChannel:
        params: Dict[str, int] = {"seq_num": start_seq_num}
        if limit_count is not None:
            params["count"] = limit_count
        if limit_bytes is not None:
            params["bytes"] = limit_bytes
        return HttpReadChannel(self, params)

    async def append(
        self,
        batch: AppendBatch,
        fencing_token: Optional[bytes] = None,
        match_seq_num: Optional[int] = None,
    ) -> AppendAck:
        """Send one append request and wait for its acknowledgement."""
        body: Dict[str, Any] = {"records": [encode_record(r) for r in batch.records]}
        if fencing_token is not None:
            body["fencing_token"] = _b64(fencing_token)
        if match_seq_num is not None:
            body["match_seq_num"] = match_seq_num

        try:
            response = await self._client.post(
                self.records_path,
                json=body,
                headers=self.request_headers(),
                timeout=self._request_timeout,
            )
        except httpx.HTTPError as e:
            raise map_httpx_error(e) from e

        if response.is_error:
            raise rejection_from_response(response)

        try:
            data = response.json()
            ack = AppendAck(
                start_seq_num=int(data["start"]["seq_num"]),
                end_seq_num=int(data["end"]["seq_num"]),
                next_seq_num=int(data["tail"]["seq_num"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TransportError(f"Malformed append acknowledgement: {e}") from e
        logger.debug(
            "Append acknowledged",
            extra={"stream": self.name, "start": ack.start_seq_num, "end": ack.end_seq_num},
        )
        return ack


class HttpAppendChannel:
    """Append channel that issues one request per batch, in order.

    send() only queues; a background task performs the requests, so the
    session can keep batching while earlier requests are in flight.
    """

    def __init__(
        self,
        handle: HttpStreamHandle,
        fencing_token: Optional[bytes],
        match_seq_num: Optional[int],
    ) -> None:
        self._handle = handle
        self._fencing_token = fencing_token
        self._match_seq_num = match_seq_num
        self._outbound: asyncio.Queue[Optional[AppendBatch]] = asyncio.Queue()
        self._acks: asyncio.Queue[Any] = asyncio.Queue()
        self._send_closed = False
        self._finished = False
        self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        first = True
        while True:
            batch = await self._outbound.get()
            if batch is None:
                await self._acks.put(None)
                return
            try:
                ack = await self._handle.append(
                    batch,
                    fencing_token=self._fencing_token,
                    match_seq_num=self._match_seq_num if first else None,
                )
            except TransportError as e:
                await self._acks.put(e)
                return
            first = False
            await self._acks.put(ack)

    async def send(self, batch: AppendBatch) -> None:
        if self._send_closed:
            raise TransportConnectionError("Append channel send side is closed")
        await self._outbound.put(batch)

    async def close_send(self) -> None:
        if not self._send_closed:
            self._send_closed = True
            await self._outbound.put(None)

    async def recv(self) -> Optional[AppendAck]:
        if self._finished:
            return None
        item = await self._acks.get()
        if item is None:
            self._finished = True
            return None
        if isinstance(item, Exception):
            self._finished = True
            raise item
        return item

    async def aclose(self) -> None:
        self._send_closed = True
        self._finished = True
        self._pump_task.cancel()
        await asyncio.gather(self._pump_task, return_exceptions=True)


class HttpReadChannel:
    """Read channel over a server-sent event stream."""

    def __init__(self, handle: HttpStreamHandle, params: Dict[str, int]) -> None:
        self._handle = handle
        self._params = params
        self._events = self._read()

    async def _read(self) -> AsyncIterator[ReadOutput]:
        handle = self._handle
        headers = handle.request_headers()
        headers["Accept"] = "text/event-stream"
        timeout = httpx.Timeout(handle._request_timeout, read=None)

        async with handle._client.stream(
            "GET",
            handle.records_path,
            params=self._params,
            headers=headers,
            timeout=timeout,
        ) as response:
            if response.is_error:
                await response.aread()
                raise rejection_from_response(response)

            async for event, data in iter_sse(response.aiter_lines()):
                if event == "batch":
                    payload = json.loads(data)
                    yield StoredBatch(
                        records=tuple(decode_record(r) for r in payload.get("records", []))
                    )
                elif event == "first_seq_num":
                    yield FirstSeqNum(int(json.loads(data)["seq_num"]))
                elif event == "next_seq_num":
                    yield NextSeqNum(int(json.loads(data)["seq_num"]))
                elif event == "error":
                    payload = json.loads(data)
                    raise ServiceRejectedError(
                        str(payload.get("code", "unknown")),
                        str(payload.get("message", data)),
                    )
                elif event == "done":
                    return
                elif event != "ping":
                    logger.debug("Ignoring unknown read event", extra={"event": event})

    async def recv(self) -> Optional[ReadOutput]:
        try:
            return await self._events.__anext__()
        except StopAsyncIteration:
            return None
        except httpx.HTTPError as e:
            raise map_httpx_error(e) from e
        except (KeyError, ValueError) as e:
            raise TransportError(f"Malformed read output: {e}") from e

    async def aclose(self) -> None:
        await self._events.aclose()
