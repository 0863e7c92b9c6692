import asyncio
import json

import httpx
import pytest

from conftest import path_of
from posclient.services.batcher import (
    BatchConfig,
    BatchRequest,
    BatchResponse,
    RequestBatcher,
    transport_batch_dispatcher,
)
from posclient.services.errors import ClientError, NetworkError, ValidationError


class RecordingDispatcher:
    def __init__(self, fail_ids=(), missing_ids=()):
        self.batches: list[list[BatchRequest]] = []
        self.fail_ids = set(fail_ids)
        self.missing_ids = set(missing_ids)

    async def __call__(self, requests):
        self.batches.append(list(requests))
        responses = []
        # Answer in reverse order; callers must match by id.
        for request in reversed(requests):
            if request.id in self.missing_ids:
                continue
            if request.id in self.fail_ids:
                responses.append(BatchResponse(request.id, 404, error="Not found"))
            else:
                responses.append(BatchResponse(request.id, 200, data={"path": request.path}))
        return responses


class TestBatching:
    async def test_requests_in_window_go_out_together(self):
        dispatcher = RecordingDispatcher()
        batcher = RequestBatcher(dispatcher, BatchConfig(max_batch_size=10, window=0.01))

        results = await asyncio.gather(
            batcher.add(BatchRequest("/inventory/1")),
            batcher.add(BatchRequest("/inventory/2")),
            batcher.add(BatchRequest("/inventory/3")),
        )

        assert len(dispatcher.batches) == 1
        assert [r["path"] for r in results] == ["/inventory/1", "/inventory/2", "/inventory/3"]

    async def test_full_batch_flushes_without_waiting(self):
        dispatcher = RecordingDispatcher()
        batcher = RequestBatcher(dispatcher, BatchConfig(max_batch_size=2, window=60))

        results = await asyncio.wait_for(
            asyncio.gather(
                batcher.add(BatchRequest("/a")),
                batcher.add(BatchRequest("/b")),
            ),
            timeout=1,
        )

        assert len(results) == 2
        assert len(dispatcher.batches[0]) == 2

    async def test_oversized_burst_is_split(self):
        dispatcher = RecordingDispatcher()
        batcher = RequestBatcher(dispatcher, BatchConfig(max_batch_size=2, window=0.01))

        await asyncio.gather(*(batcher.add(BatchRequest(f"/p/{i}")) for i in range(5)))

        assert [len(b) for b in dispatcher.batches] == [2, 2, 1]
        assert batcher.batches_sent == 3


class TestPerCallerOutcome:
    async def test_error_status_and_missing_response(self):
        failing = BatchRequest("/products/404")
        missing = BatchRequest("/products/lost")
        ok = BatchRequest("/products/1")
        dispatcher = RecordingDispatcher(fail_ids=[failing.id], missing_ids=[missing.id])
        batcher = RequestBatcher(dispatcher, BatchConfig(window=0.01))

        results = await asyncio.gather(
            batcher.add(failing), batcher.add(missing), batcher.add(ok),
            return_exceptions=True,
        )

        assert isinstance(results[0], ValidationError)
        assert results[0].message == "Not found"
        assert isinstance(results[1], ClientError)
        assert results[2] == {"path": "/products/1"}

    async def test_dispatch_failure_reaches_every_caller(self):
        async def dispatcher(requests):
            raise httpx.ConnectError("offline")

        batcher = RequestBatcher(dispatcher, BatchConfig(window=0.01))

        results = await asyncio.gather(
            batcher.add(BatchRequest("/a")), batcher.add(BatchRequest("/b")),
            return_exceptions=True,
        )

        assert all(isinstance(r, NetworkError) for r in results)

    async def test_clear_fails_pending(self):
        batcher = RequestBatcher(RecordingDispatcher(), BatchConfig(window=60))
        pending = asyncio.create_task(batcher.add(BatchRequest("/a")))
        await asyncio.sleep(0)

        batcher.clear()

        with pytest.raises(ClientError):
            await pending
        assert batcher.pending_count == 0

    async def test_flush_sends_immediately(self):
        dispatcher = RecordingDispatcher()
        batcher = RequestBatcher(dispatcher, BatchConfig(window=60))
        pending = asyncio.create_task(batcher.add(BatchRequest("/a")))
        await asyncio.sleep(0)

        await batcher.flush()

        assert await pending == {"path": "/a"}


class TestTransportDispatcher:
    async def test_posts_envelope(self, build_transport):
        seen = []

        def handler(request):
            seen.append(request)
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "responses": [
                        {"id": item["id"], "status": 200, "data": item["path"]}
                        for item in body["requests"]
                    ]
                },
            )

        transport, _ = build_transport(handler)
        batcher = RequestBatcher(transport_batch_dispatcher(transport), BatchConfig(window=0.01))

        results = await asyncio.gather(
            batcher.add(BatchRequest("/outlets")), batcher.add(BatchRequest("/categories"))
        )

        assert results == ["/outlets", "/categories"]
        assert len(seen) == 1
        assert seen[0].method == "POST"
        assert path_of(seen[0]) == "/batch"
