#!/usr/bin/env python3
"""
Runs a chunked sync against a live instance and watches it finish.

Start the API with the sample units loaded first:
    JOBCTL_UNIT_MODULES='["jobctl.units.sample"]' uvicorn jobctl.main:app
"""
import asyncio
import uuid

import httpx

API_URL = "http://localhost:8000"


async def verify_nightly_sync():
    logical_name = f"nightly-sync-{uuid.uuid4().hex[:8]}"

    async with httpx.AsyncClient(base_url=API_URL, timeout=10.0) as client:
        print("1. Submitting chunked sync (1000 records, chunk 200)...")
        resp = await client.post("/api/v1/jobs", json={
            "logical_name": logical_name,
            "unit": "sample.sync",
            "mode": "chunked",
            "config": {"chunk_size": 200},
            "context": {"records": 1000, "slice_delay": 0.5},
        })
        resp.raise_for_status()
        job_id = resp.json()["id"]
        print(f"   Job created: {job_id}")

        print("2. Submitting the same logical job again...")
        dup = await client.post("/api/v1/jobs", json={
            "logical_name": logical_name,
            "unit": "sample.sync",
            "mode": "chunked",
            "config": {"chunk_size": 200},
        })
        if dup.status_code == 409 and dup.json()["detail"]["job_id"] == job_id:
            print("   Refused as duplicate (expected)")
        else:
            print(f"   FAILURE: duplicate launch answered {dup.status_code}: {dup.text}")
            return

        print("3. Polling progress...")
        for _ in range(60):
            progress = (await client.get(f"/api/v1/dashboard/jobs/{job_id}/progress")).json()["progress"]
            job = (await client.get(f"/api/v1/jobs/{job_id}")).json()
            print(f"   status={job['status']} progress={progress:.0%} slices={job['slices_executed']}")
            if job["status"] in ("completed", "failed", "aborted"):
                break
            await asyncio.sleep(1)

        if job["status"] == "completed" and job["items_processed"] == 1000 and job["slices_executed"] == 5:
            print("SUCCESS: 1000 records synced in 5 slices.")
        else:
            print(f"FAILURE: final state {job}")


if __name__ == "__main__":
    asyncio.run(verify_nightly_sync())
