#!/usr/bin/env python3
"""
Fires 20 concurrent accepts at one dispatched job against a running API
(backed by Postgres) and checks exactly one agent won it.
"""
import asyncio
import uuid

import httpx

from fieldwork.db.models import AgentProfile, Property
from fieldwork.db.session import AsyncSessionLocal

API_URL = "http://localhost:8000"
AGENTS = 20

async def seed() -> tuple[str, list[str]]:
    run = uuid.uuid4().hex[:8]
    async with AsyncSessionLocal() as session:
        prop = Property(
            address_line1=f"{run} Congress Ave",
            city="Austin",
            state="TX",
            zip_code="78701",
            latitude=30.2672,
            longitude=-97.7431,
        )
        session.add(prop)
        agent_ids = [f"agent-{run}-{i}" for i in range(AGENTS)]
        for agent_id in agent_ids:
            session.add(AgentProfile(
                user_id=agent_id,
                email=f"{agent_id}@example.com",
                name=agent_id,
                home_base_lat=30.30,
                home_base_lng=-97.75,
                verified=True,
            ))
        await session.commit()
        return str(prop.id), agent_ids

async def attempt_accept(client, job_id, agent_id):
    try:
        resp = await client.post(f"/api/v1/jobs/{job_id}/accept", json={"agent_id": agent_id}, timeout=5.0)
        return agent_id, resp.status_code
    except httpx.HTTPError as e:
        return agent_id, f"error: {e}"

async def verify_no_double_accept():
    property_id, agent_ids = await seed()

    async with httpx.AsyncClient(base_url=API_URL) as client:
        # 1. Create and dispatch 1 job
        print("1. Creating and dispatching 1 job...")
        resp = await client.post("/api/v1/jobs", json={"property_id": property_id, "scope_preset": "EXTERIOR_ONLY"})
        resp.raise_for_status()
        job_id = resp.json()["id"]
        resp = await client.post(f"/api/v1/jobs/{job_id}/dispatch")
        resp.raise_for_status()
        print(f"   Job {job_id} offered to {resp.json()['notified_agents']} agents")

        # 2. Everyone accepts at once
        print(f"2. Spawning {AGENTS} concurrent accepts...")
        results = await asyncio.gather(*(attempt_accept(client, job_id, a) for a in agent_ids))

        # 3. Analyze results
        winners = [agent for agent, code in results if code == 200]
        conflicts = [agent for agent, code in results if code == 409]
        print(f"3. Results: {len(winners)} accepted, {len(conflicts)} conflicts.")

        job = (await client.get(f"/api/v1/jobs/{job_id}")).json()

    if len(winners) == 1 and job["assigned_agent_id"] == winners[0]:
        print(f"SUCCESS: Exactly one agent won the job: {winners[0]}")
    elif not winners:
        print("FAILURE: No one won the job (unexpected).")
    else:
        print(f"FAILURE: {len(winners)} accepts succeeded! Double assignment detected.")
        print(f"   Stored assignee: {job['assigned_agent_id']}")

if __name__ == "__main__":
    asyncio.run(verify_no_double_accept())
