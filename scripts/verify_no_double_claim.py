#!/usr/bin/env python3
"""Smoke check against a running server: one pending job, many racing workers."""
import asyncio
import os

import httpx

API_URL = os.environ.get("MANAGER_URL", "http://localhost:8000")
HEADERS = {"Authorization": f"Worker {os.environ.get('WORKER_API_KEY', '')}"}


async def attempt_claim(client, worker_id):
    try:
        resp = await client.post("/api/v1/worker/jobs/claim", json={"workerId": worker_id}, timeout=5.0)
        if resp.status_code == 200 and resp.json()["data"]:
            return worker_id, resp.json()["data"]["job"]["id"]
    except httpx.HTTPError:
        pass
    return None


async def verify_no_double_claim():
    async with httpx.AsyncClient(base_url=API_URL, headers=HEADERS) as client:
        # Drain whatever is already pending so only our job is claimable
        while (await attempt_claim(client, "drainer")) is not None:
            pass

        print("1. Creating 1 job...")
        resp = await client.post("/api/v1/admin/jobs", json={
            "assetId": 0,
            "spaceName": "smoke",
            "primaryFilePath": "/dev/null",
            "assetType": "video",
        })
        resp.raise_for_status()
        job_id = resp.json()["data"]["id"]
        print(f"   Job created: {job_id}")

        print("2. Spawning 20 concurrent claim attempts...")
        results = await asyncio.gather(*(attempt_claim(client, f"worker-{i}") for i in range(20)))

    claims = [r for r in results if r is not None]
    print(f"3. Results: {len(claims)} successful claims.")

    if len(claims) == 1 and claims[0][1] == job_id:
        print(f"SUCCESS: Exactly one worker claimed the job ({claims[0][0]}).")
    elif not claims:
        print("FAILURE: No one claimed the job.")
    else:
        print(f"FAILURE: {len(claims)} workers claimed the job! Double claim detected.")
        for worker_id, claimed in claims:
            print(f"   - {worker_id} -> job {claimed}")


if __name__ == "__main__":
    asyncio.run(verify_no_double_claim())
