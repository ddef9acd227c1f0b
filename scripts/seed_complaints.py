#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.change_feed import create_feed_from_env  # noqa: E402
from app.complaint_store import create_store_from_env  # noqa: E402
from app.lifecycle import LifecycleEngine  # noqa: E402
from app.models import ROLE_REVIEWER, ROLE_SUBMITTER, Subject  # noqa: E402

DEMO_COMPLAINTS = [
    ("Leaky faucet", "The bathroom faucet on floor two drips all night."),
    ("Broken heater", "Room 214 has had no heating since Monday morning."),
    ("Wi-Fi outage", "The library Wi-Fi drops every few minutes during the afternoon."),
]


def main() -> int:
    parser = argparse.ArgumentParser(description="Load demo complaints into the configured store.")
    parser.add_argument("--submitter", default="student_demo", help="Owner id for the seeded complaints.")
    parser.add_argument(
        "--resolve-first",
        action="store_true",
        help="Mark the first seeded complaint resolved with a reviewer response.",
    )
    args = parser.parse_args()

    engine = LifecycleEngine(store=create_store_from_env(), feed=create_feed_from_env())
    submitter = Subject(id=args.submitter, role=ROLE_SUBMITTER)
    created = [
        engine.request_create(submitter, title=title, description=description)
        for title, description in DEMO_COMPLAINTS
    ]
    if args.resolve_first and created:
        reviewer = Subject(id="reviewer_demo", role=ROLE_REVIEWER)
        created[0] = engine.request_update(
            reviewer,
            created[0].id,
            status="resolved",
            response="Plumbing replaced the washer.",
        )
    print(
        json.dumps(
            {
                "success": True,
                "store_backend": engine.store.backend_name,
                "items": [x.as_dict() for x in created],
            },
            ensure_ascii=True,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
