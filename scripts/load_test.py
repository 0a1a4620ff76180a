"""Load test: many synthetic students entering the ProTV queue at once.

Every profile enters the queue concurrently with a random (often empty) set
of filters.  Afterwards the script checks the pairing invariants from the
outside:

- no user appears in more than one match returned by ``/queue/enter``
- no matched user still holds a waiting ticket
- every returned match respects both participants' filters

Usage: python -m scripts.load_test [--count 100] [--base-url http://localhost:8000]
"""
import argparse
import asyncio
import random
import statistics
import sys
import time
import uuid
from collections import Counter
from typing import Any

import httpx


DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_COUNT = 100

SCHOOLS = [
    "Princeton University",
    "Harvard University",
    "Yale University",
    "Columbia University",
    "Cornell University",
    "Dartmouth College",
    "Brown University",
    "University of Pennsylvania",
]
MAJORS = ["Computer Science", "Economics", "History", "Biology", "Mathematics", "English"]
CLASS_YEARS = [2025, 2026, 2027, 2028]


def random_filters() -> dict[str, list]:
    """Mostly wildcard filters, sometimes one narrow dimension."""
    filters: dict[str, list] = {"schools": [], "class_years": [], "majors": []}
    roll = random.random()
    if roll < 0.15:
        filters["schools"] = random.sample(SCHOOLS, random.randint(1, 3))
    elif roll < 0.25:
        filters["class_years"] = random.sample(CLASS_YEARS, random.randint(1, 2))
    elif roll < 0.30:
        filters["majors"] = random.sample(MAJORS, 1)
    return filters


def passes(filters: dict[str, list], profile: dict[str, Any]) -> bool:
    if filters["schools"] and profile["school"] not in filters["schools"]:
        return False
    if filters["class_years"] and profile["class_year"] not in filters["class_years"]:
        return False
    majors = [m.casefold() for m in filters["majors"]]
    if majors and profile["major"].casefold() not in majors:
        return False
    return True


async def create_profile(client: httpx.AsyncClient, base_url: str, index: int) -> dict[str, Any] | None:
    """Create a single profile via the API."""
    payload = {
        "email": f"loadtest_{index}_{uuid.uuid4().hex[:8]}@test.edu",
        "full_name": f"Load Test Student {index}",
        "school": random.choice(SCHOOLS),
        "major": random.choice(MAJORS),
        "class_year": random.choice(CLASS_YEARS),
    }
    try:
        resp = await client.post(f"{base_url}/api/v1/profiles/", json=payload)
        if resp.status_code in (200, 201):
            return resp.json()
        print(f"  [WARN] Profile {index}: status {resp.status_code}")
        return None
    except httpx.HTTPError as e:
        print(f"  [ERROR] Profile {index}: {e}")
        return None


async def enter_queue(
    client: httpx.AsyncClient,
    base_url: str,
    user_id: str,
    filters: dict[str, list],
) -> tuple[dict[str, Any] | None, float]:
    t0 = time.monotonic()
    resp = await client.post(
        f"{base_url}/api/v1/queue/enter",
        json={"user_id": user_id, "filters": filters},
    )
    dt = time.monotonic() - t0
    resp.raise_for_status()
    return resp.json(), dt


async def run_load_test(base_url: str, count: int) -> dict[str, Any]:
    """Run the full load test pipeline."""
    print(f"\n{'='*60}")
    print(f"ProTV Queue Load Test — {count} students")
    print(f"Target: {base_url}")
    print(f"{'='*60}\n")

    results: dict[str, Any] = {
        "total": count,
        "profiles_created": 0,
        "matches": 0,
        "violations": [],
        "errors": [],
        "timings": [],
    }

    async with httpx.AsyncClient(timeout=30.0) as client:
        # Phase 1: Create profiles
        print(f"[1/3] Creating {count} profiles...")
        profiles: dict[str, dict[str, Any]] = {}
        for i in range(count):
            profile = await create_profile(client, base_url, i)
            if profile and "id" in profile:
                profiles[profile["id"]] = profile
        results["profiles_created"] = len(profiles)
        print(f"  -> {len(profiles)} profiles created\n")

        # Phase 2: Everyone enters at once
        print(f"[2/3] Entering {len(profiles)} users concurrently...")
        filters = {uid: random_filters() for uid in profiles}
        outcomes = await asyncio.gather(
            *(enter_queue(client, base_url, uid, filters[uid]) for uid in profiles),
            return_exceptions=True,
        )

        matches: dict[str, dict[str, Any]] = {}
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                results["errors"].append(str(outcome))
                continue
            body, dt = outcome
            results["timings"].append(dt)
            if body.get("match"):
                matches[body["match"]["id"]] = body["match"]
        results["matches"] = len(matches)
        print(f"  -> {len(matches)} matches created\n")

        # Phase 3: Verify invariants
        print("[3/3] Verifying pairing invariants...")
        seen = Counter()
        for match in matches.values():
            a, b = match["user1_id"], match["user2_id"]
            seen[a] += 1
            seen[b] += 1
            if not (passes(filters[a], profiles[b]) and passes(filters[b], profiles[a])):
                results["violations"].append(f"filter mismatch in {match['room_id']}")

        for uid, n in seen.items():
            if n > 1:
                results["violations"].append(f"user {uid[:8]} in {n} matches")

        for uid in seen:
            resp = await client.get(f"{base_url}/api/v1/queue/{uid}")
            if resp.status_code == 200 and resp.json().get("in_queue"):
                results["violations"].append(f"matched user {uid[:8]} still waiting")

        count_resp = await client.get(f"{base_url}/api/v1/queue/count")
        waiting = count_resp.json().get("count") if count_resp.status_code == 200 else None
        print(f"  -> {len(seen)} users matched, {waiting} still waiting\n")

        # Leave the pool clean for the next run
        await asyncio.gather(
            *(
                client.post(f"{base_url}/api/v1/queue/leave", json={"user_id": uid})
                for uid in profiles
                if uid not in seen
            ),
            return_exceptions=True,
        )

    # Summary
    print(f"{'='*60}")
    print("LOAD TEST RESULTS")
    print(f"{'='*60}")
    print(f"Profiles created: {results['profiles_created']}/{count}")
    print(f"Matches:          {results['matches']}")

    timings = results["timings"]
    if timings:
        print("\nqueue/enter latency:")
        print(f"  mean:   {statistics.mean(timings):.2f}s")
        print(f"  median: {statistics.median(timings):.2f}s")
        print(f"  p95:    {sorted(timings)[int(len(timings)*0.95)]:.2f}s")
        print(f"  max:    {max(timings):.2f}s")

    for label in ("violations", "errors"):
        if results[label]:
            print(f"\n{label.title()} ({len(results[label])}):")
            for e in results[label][:10]:
                print(f"  - {e}")

    print(f"\n{'='*60}\n")
    return results


def main():
    parser = argparse.ArgumentParser(description="ProTV Queue Load Test")
    parser.add_argument("--count", type=int, default=DEFAULT_COUNT, help="Number of students to simulate")
    parser.add_argument("--base-url", type=str, default=DEFAULT_BASE_URL, help="API base URL")
    args = parser.parse_args()

    results = asyncio.run(run_load_test(args.base_url, args.count))

    if results["violations"]:
        print(f"FAIL: {len(results['violations'])} pairing invariant violations")
        sys.exit(1)
    print("PASS: no double pairing, no filter violations")


if __name__ == "__main__":
    main()
