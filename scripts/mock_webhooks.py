from __future__ import annotations

import argparse
import base64
import json
import sys
import urllib.error
import urllib.request


def basic_header(user: str, password: str) -> str:
    token = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def person_event(index: int, org_id: int | None) -> dict:
    return {
        "event": "updated.person",
        "current": {
            "id": 1000 + index,
            "first_name": "Mock",
            "last_name": f"Person {index}",
            "email": [{"value": f"mock.person{index}@example.com", "primary": True}],
            "org_id": {"value": org_id} if org_id else None,
        },
        "previous": None,
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock Pipedrive webhook events to local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--user", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--org-id", type=int, default=None, help="Create this organization first.")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/plugin/pipedrive/webhook"
    headers = {"Authorization": basic_header(args.user, args.password)}

    events = []
    if args.org_id:
        events.append(
            {
                "event": "updated.organization",
                "current": {"id": args.org_id, "name": f"Mock Org {args.org_id}"},
                "previous": None,
            }
        )
    events.extend(
        person_event(index, args.org_id)
        for index in range(args.start_index, args.start_index + args.count)
    )

    for event in events:
        body = json.dumps(event, separators=(",", ":")).encode("utf-8")
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {event['event']} id={event['current']['id']} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
