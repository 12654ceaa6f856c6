#!/usr/bin/env python3
"""
Submits a unit that fails once and checks that a retry follows with backoff.

Needs the sample units and a short backoff, e.g.:
    JOBCTL_UNIT_MODULES='["jobctl.units.sample"]' JOBCTL_BACKOFF_BASE_SECONDS=1 uvicorn jobctl.main:app
"""
import asyncio
import uuid

import httpx

API_URL = "http://localhost:8000"


async def verify_retry():
    logical_name = f"flaky-{uuid.uuid4().hex[:8]}"

    async with httpx.AsyncClient(base_url=API_URL, timeout=10.0) as client:
        print("1. Submitting a unit that fails on its first run...")
        resp = await client.post("/api/v1/jobs", json={
            "logical_name": logical_name,
            "unit": "sample.flaky",
            "context": {"key": logical_name, "fail_times": 1},
            "max_retries": 2,
        })
        resp.raise_for_status()
        print(f"   Job created: {resp.json()['id']}")

        print("2. Waiting for the retry to complete...")
        runs = []
        for _ in range(30):
            runs = (await client.get("/api/v1/dashboard/history", params={"logical_name": logical_name})).json()
            if runs and runs[-1]["status"] == "completed":
                break
            await asyncio.sleep(1)

        for run in runs:
            print(f"   {run['id']} retry={run['retry_count']} status={run['status']} reason={run['reason']}")

        if [r["status"] for r in runs] == ["failed", "completed"] and runs[1]["retry_count"] == 1:
            print("SUCCESS: failed run was retried once and completed.")
        else:
            print("FAILURE: unexpected run history.")


if __name__ == "__main__":
    asyncio.run(verify_retry())
