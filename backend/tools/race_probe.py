import argparse
import concurrent.futures
import json
import threading
import time
import urllib.error
import urllib.request
from uuid import uuid4


def call(method: str, url: str, body: dict | None, user_id: str | None, timeout: float) -> tuple[int, dict | list | None]:
    data = json.dumps(body).encode("utf-8") if body is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    if user_id:
        request.add_header("X-User-Id", user_id)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            payload = response.read()
            return response.status, json.loads(payload) if payload else None
    except urllib.error.HTTPError as exc:
        return exc.code, None


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Fire concurrent friend requests between two fresh users and check one stays pending"
    )
    parser.add_argument("--base-url", default="http://127.0.0.1:8000/api/v1")
    parser.add_argument("--workers", type=int, default=16)
    parser.add_argument("--timeout", type=float, default=5.0)
    args = parser.parse_args()

    suffix = uuid4().hex[:8]
    users = []
    for name in (f"probe_a_{suffix}", f"probe_b_{suffix}"):
        status, body = call("POST", f"{args.base_url}/users", {"username": name, "display_name": name}, None, args.timeout)
        if status != 201 or not isinstance(body, dict):
            raise SystemExit(f"could not register {name}: HTTP {status}")
        users.append(body)

    lock = threading.Lock()
    statuses: dict[int, int] = {}
    barrier = threading.Barrier(max(1, args.workers))

    def worker(index: int) -> None:
        sender, receiver = (users[0], users[1]) if index % 2 == 0 else (users[1], users[0])
        barrier.wait()
        status, _ = call(
            "POST",
            f"{args.base_url}/social/friends/request",
            {"username": receiver["username"]},
            sender["id"],
            args.timeout,
        )
        with lock:
            statuses[status] = statuses.get(status, 0) + 1

    started = time.perf_counter()
    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, args.workers)) as executor:
        futures = [executor.submit(worker, index) for index in range(max(1, args.workers))]
        for future in futures:
            future.result()
    elapsed_ms = (time.perf_counter() - started) * 1000.0

    pending = 0
    for user in users:
        status, body = call("GET", f"{args.base_url}/social/friends/requests/outgoing", None, user["id"], args.timeout)
        if status == 200 and isinstance(body, list):
            pending += len(body)

    print("Friend Request Race Result")
    print(f"workers={args.workers}")
    print(f"elapsed_ms={elapsed_ms:.2f}")
    for status in sorted(statuses):
        print(f"http_{status}={statuses[status]}")
    print(f"pending_requests={pending}")
    print("result=" + ("ok" if pending == 1 else "DUPLICATE PENDING REQUESTS"))


if __name__ == "__main__":
    main()
