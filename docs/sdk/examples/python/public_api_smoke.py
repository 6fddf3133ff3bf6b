import os
import sys

import requests

base_url = os.getenv("JOURNEY_ENGINE_BASE_URL", "http://localhost:8000").rstrip("/")
customer_id = os.getenv("JOURNEY_ENGINE_SMOKE_CUSTOMER", "smoke-customer")


def main() -> int:
    ready_response = requests.get(f"{base_url}/ready", timeout=15)
    ready_response.raise_for_status()
    if not ready_response.json().get("ok"):
        print("Engine database is not reachable", file=sys.stderr)
        return 1

    journeys_response = requests.get(
        f"{base_url}/journeys",
        params={"status": "active", "limit": 5, "offset": 0},
        timeout=15,
    )
    journeys_response.raise_for_status()

    customer_response = requests.put(
        f"{base_url}/customers/{customer_id}",
        json={"timezone": "UTC", "attributes": {"smoke_test": True}},
        timeout=15,
    )
    customer_response.raise_for_status()

    tick_response = requests.post(f"{base_url}/engine/tick", json={"limit": 1}, timeout=30)
    tick_response.raise_for_status()

    journeys = journeys_response.json()
    tick = tick_response.json()
    print(f"Active journeys: {journeys['pagination']['total']}")
    print(f"Customer: {customer_response.json()['id']}")
    print(f"Tick by {tick['worker_id']}: claimed={tick['claimed']} steps={tick['steps']}")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except requests.RequestException as exc:
        print(f"Journey engine smoke check failed: {exc}", file=sys.stderr)
        raise SystemExit(1)
