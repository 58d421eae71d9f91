from __future__ import annotations

import argparse
import json
import sys
import time
import urllib.error
import urllib.request
from typing import Optional


def post_sweep(*, url: str, token: Optional[str]) -> tuple[int, Optional[dict], str]:
    request = urllib.request.Request(url, data=b"", method="POST")
    request.add_header("Accept", "application/json")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(request, timeout=120) as response:
            body = response.read().decode("utf-8")
            return response.status, json.loads(body), body
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8")
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            data = None
        return exc.code, data, body


def main() -> int:
    parser = argparse.ArgumentParser(description="Trigger the followup dispatch sweep.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--token", default="", help="JWT with the service or admin role.")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between sweeps.")
    parser.add_argument("--once", action="store_true")
    args = parser.parse_args()

    url = f"{args.base_url.rstrip('/')}/followups/sweep"
    token = args.token.strip() or None
    exit_code = 0
    while True:
        try:
            status, data, body = post_sweep(url=url, token=token)
        except urllib.error.URLError as exc:
            print(f"sweep request failed: {exc.reason}", file=sys.stderr)
            exit_code = 1
        else:
            if status == 200 and isinstance(data, dict):
                print(
                    f"sweep processed={data.get('processed')} sent={data.get('sent')} "
                    f"failed={data.get('failed')} skipped={data.get('skipped')}"
                )
                exit_code = 0
            else:
                print(f"sweep returned {status}: {body}", file=sys.stderr)
                exit_code = 1
        if args.once:
            return exit_code
        time.sleep(max(1, args.interval))


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
