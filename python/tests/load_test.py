"""
Verification API Load Testing with Locust

Usage:
    # Start the API with an application service configured
    cd python && uvicorn api.server:app --host 0.0.0.0 --port 8000

    # Application ids the application service knows as payment_completed
    export LOAD_APPLICATION_IDS=APP-1,APP-2,APP-3

    locust -f tests/load_test.py --host=http://localhost:8000

    # Headless
    locust -f tests/load_test.py --host=http://localhost:8000 \
        --users 100 --spawn-rate 10 --run-time 5m --headless

Performance Targets:
    - P95 latency < 500ms for run polling
    - Start returns 202 without waiting for source checks
    - Error rate < 0.01% (409 on an already-active application is expected)
"""

import json
import os
import random
from typing import List

from locust import HttpUser, between, events, tag, task

API_KEY = os.getenv("API_KEY", "")


def application_ids() -> List[str]:
    raw = os.getenv("LOAD_APPLICATION_IDS", "")
    ids = [value.strip() for value in raw.split(",") if value.strip()]
    return ids or [f"LOAD-{n:04d}" for n in range(200)]


class VerificationUser(HttpUser):
    """
    Simulates a back-office client of the verification API.

    - 60% of requests: poll a run
    - 20% of requests: start a verification
    - 10% of requests: list hits of a run
    - 10% of requests: health checks
    """

    wait_time = between(1, 3)

    def on_start(self):
        self.run_ids: List[str] = []
        self.application_ids = application_ids()
        if API_KEY:
            self.client.headers["X-API-Key"] = API_KEY

    @task(2)
    @tag("start", "write")
    def start_verification(self):
        """Start a run; 409 means the application already has one in flight."""
        application_id = random.choice(self.application_ids)
        with self.client.post(
            "/api/v1/verifications",
            json={"application_id": application_id, "actor_id": "load-test"},
            name="/api/v1/verifications",
            catch_response=True
        ) as response:
            if response.status_code == 202:
                try:
                    self.run_ids.append(response.json()["id"])
                    response.success()
                except (json.JSONDecodeError, KeyError):
                    response.failure("Missing run id in response")
            elif response.status_code in (404, 409):
                response.success()
            else:
                response.failure(f"Status code: {response.status_code}")

    @task(6)
    @tag("poll", "read")
    def poll_run(self):
        """Poll a run this user started."""
        if not self.run_ids:
            return
        run_id = random.choice(self.run_ids)
        with self.client.get(
            f"/api/v1/verifications/{run_id}",
            name="/api/v1/verifications/[id]",
            catch_response=True
        ) as response:
            if response.status_code != 200:
                response.failure(f"Status code: {response.status_code}")
                return
            status = response.json().get("status")
            if status in ("completed", "failed"):
                self.run_ids.remove(run_id)
            response.success()

    @task(1)
    @tag("hits", "read")
    def list_hits(self):
        if not self.run_ids:
            return
        run_id = random.choice(self.run_ids)
        with self.client.get(
            f"/api/v1/verifications/{run_id}/hits",
            name="/api/v1/verifications/[id]/hits",
            catch_response=True
        ) as response:
            if response.status_code == 200 and "hits" in response.json():
                response.success()
            else:
                response.failure(f"Status code: {response.status_code}")

    @task(1)
    @tag("health", "read")
    def health_check(self):
        with self.client.get("/api/v1/health", name="/api/v1/health", catch_response=True) as response:
            data = response.json() if response.status_code == 200 else {}
            if data.get("status") == "healthy":
                response.success()
            else:
                response.failure(f"Unhealthy status: {data or response.status_code}")


@events.quitting.add_listener
def on_quitting(environment, **kwargs):
    """Print summary when load test ends."""
    if environment.stats.total.fail_ratio > 0.01:
        print(f"\nWARNING: Failure rate {environment.stats.total.fail_ratio:.2%} exceeds 1% threshold")

    if environment.stats.total.avg_response_time > 500:
        print(f"\nWARNING: Average response time {environment.stats.total.avg_response_time:.0f}ms exceeds 500ms target")
