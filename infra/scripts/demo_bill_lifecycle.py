from __future__ import annotations

import asyncio
import os
import time
from typing import Any
from uuid import uuid4

import httpx

APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:8000")


def assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


async def wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
        except httpx.HTTPError:
            pass
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}")


async def wait_closed(client: httpx.AsyncClient, bill_id: str, timeout_seconds: float = 30.0) -> dict[str, Any]:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        response = await client.get(f"/bills/{bill_id}")
        assert_status(response, 200)
        body = response.json()
        if body["status"] == "CLOSED":
            return body
        await asyncio.sleep(0.5)
    raise RuntimeError(f"timeout waiting for bill {bill_id} to close")


async def main() -> None:
    customer_id = f"demo-{uuid4().hex[:8]}"
    async with httpx.AsyncClient(base_url=APP_BASE_URL, timeout=10.0) as client:
        await wait_ok(client, "/readyz")

        created = await client.post("/bills", json={"customer_id": customer_id, "currency": "USD"})
        assert_status(created, 201)
        bill_id = created.json()["bill_id"]

        for description, amount in (("api calls", 1000), ("storage", 1500)):
            added = await client.post(
                f"/bills/{bill_id}/items",
                json={"description": description, "amount": amount},
            )
            assert_status(added, 204)

        closed = await client.post(f"/bills/{bill_id}/close")
        assert_status(closed, 202)

        bill = await wait_closed(client, bill_id)
        if bill["total_amount"] != 2500:
            raise RuntimeError(f"unexpected total for {bill_id}: {bill['total_amount']}")

        late = await client.post(f"/bills/{bill_id}/items", json={"description": "late", "amount": 1})
        assert_status(late, 409)

        listed = await client.get(f"/customers/{customer_id}/bills", params={"status": "CLOSED"})
        assert_status(listed, 200)

        orchestration = await client.get(f"/bills/{bill_id}/orchestration")
        assert_status(orchestration, 200)

    print(f"bill {bill_id} closed with total {bill['total_amount']} ({len(bill['line_items'])} items)")
    print(f"orchestrator: {orchestration.json()['status']} / {orchestration.json()['state']}")


if __name__ == "__main__":
    asyncio.run(main())
