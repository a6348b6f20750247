#!/usr/bin/env python3
"""Helper: download payloads from a dali-server and report results as JSON.

Usage:
    python download_helper.py single <url> [<range>]
    python download_helper.py upload <url> <body_bytes>
    python download_helper.py many <url> <count>

Output (JSON on stdout):
    single: {"elapsed": 1.23, "bytes": 104857600, "status": 200}
    upload: {"elapsed": 0.05, "bytes": 4096, "status": 200,
             "report": {"durationMicros": ..., "bytesRead": ..., "bytesPerSecond": ...}}
    many:   {"elapsed": 5.67, "files_ok": 500, "failed": 0, "bytes": 5120000}
"""

import json
import sys
import time
import urllib.error
import urllib.request


def _read_all(resp):
    total = 0
    first = b""
    while True:
        chunk = resp.read(65536)
        if not chunk:
            break
        if not first:
            first = chunk
        total += len(chunk)
    return total, first


def download_single(url, byte_range=None):
    headers = {"Range": f"bytes={byte_range}"} if byte_range else {}
    req = urllib.request.Request(url, headers=headers)
    t0 = time.monotonic()
    with urllib.request.urlopen(req, timeout=600) as resp:
        total, _ = _read_all(resp)
        status = resp.status
    elapsed = time.monotonic() - t0
    return {"elapsed": elapsed, "bytes": total, "status": status}


def upload(url, body_bytes):
    """POST a body and decode the timing report at the start of the response."""
    req = urllib.request.Request(url, data=b"x" * body_bytes, method="POST")
    t0 = time.monotonic()
    with urllib.request.urlopen(req, timeout=600) as resp:
        total, first = _read_all(resp)
        status = resp.status
    elapsed = time.monotonic() - t0

    report, _ = json.JSONDecoder().raw_decode(first.decode("ascii", errors="replace"))
    return {"elapsed": elapsed, "bytes": total, "status": status, "report": report}


def download_many(url, count):
    t0 = time.monotonic()
    total = 0
    ok = 0
    failed = 0
    for _ in range(count):
        try:
            with urllib.request.urlopen(url, timeout=30) as resp:
                nbytes, _ = _read_all(resp)
            total += nbytes
            ok += 1
        except (urllib.error.URLError, OSError):
            failed += 1
    elapsed = time.monotonic() - t0
    return {"elapsed": elapsed, "files_ok": ok, "failed": failed, "bytes": total}


def main():
    mode = sys.argv[1]
    if mode == "single":
        result = download_single(sys.argv[2], sys.argv[3] if len(sys.argv) > 3 else None)
    elif mode == "upload":
        result = upload(sys.argv[2], int(sys.argv[3]))
    elif mode == "many":
        result = download_many(sys.argv[2], int(sys.argv[3]))
    else:
        print(json.dumps({"error": f"unknown mode: {mode}"}))
        sys.exit(1)

    print(json.dumps(result))


if __name__ == "__main__":
    main()
