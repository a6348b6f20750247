#!/usr/bin/env python3
"""Benchmark: payload throughput of dali-server.

Downloads full payloads for each strategy, a set of byte ranges from the
zero-filled location, many small payloads back to back, and uploads of
increasing size to the timed location.

Architecture:
  Process 1: dali-server --cli
  Process 2: Download client (separate Python process, like a browser)

Usage:
    uv run python benchmarks/bench_payload.py
"""

import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from bench_common import (
    BENCH_DIR,
    download_many, download_single, upload, url,
    print_header, print_row, print_sep,
    start_server, stop_server,
)

LOCATIONS = [
    "/zero=1g:zero",
    "/pattern=100m:pattern",
    "/small=10k:pattern",
    "/timed=64k:timed",
]

FULL = [
    ("/zero", "zero 1 GB"),
    ("/pattern", "pattern 100 MB"),
]

RANGES = ["0-1048575", "536870912-", "-4096"]

UPLOADS = [1024, 1024 * 1024, 16 * 1024 * 1024]


def main():
    server = start_server(LOCATIONS)
    all_results = []

    try:
        print_header("Full payloads")
        W = [16, 14, 10]
        print_row(["Location", "Throughput", "Time"], W)
        print_sep(W)

        for path, label in FULL:
            try:
                r = download_single(url(path))
                mbps = r["bytes"] / r["elapsed"] / 1024 / 1024
                print_row([label, f"{mbps:.1f} MB/s", f"{r['elapsed']:.2f}s"], W)
                all_results.append({
                    "test": "full", "location": path,
                    "mbps": round(mbps, 1),
                    "elapsed": round(r["elapsed"], 2),
                    "bytes": r["bytes"],
                })
            except Exception as exc:
                print_row([label, "FAIL", str(exc)[:30]], W)

        print_header("Byte ranges — /zero")
        W = [20, 6, 12, 10]
        print_row(["Range", "Status", "Bytes", "Time"], W)
        print_sep(W)

        for byte_range in RANGES:
            try:
                r = download_single(url("/zero"), byte_range)
                print_row([byte_range, r["status"], r["bytes"], f"{r['elapsed']:.3f}s"], W)
                all_results.append({
                    "test": "range", "range": byte_range,
                    "status": r["status"],
                    "elapsed": round(r["elapsed"], 3),
                    "bytes": r["bytes"],
                })
            except Exception as exc:
                print_row([byte_range, "FAIL", str(exc)[:30], ""], W)

        print_header("Small payloads — /small x 1000")
        W = [8, 8, 10, 10]
        print_row(["OK", "Failed", "Req/s", "Time"], W)
        print_sep(W)
        try:
            r = download_many(url("/small"), 1000)
            rps = r["files_ok"] / r["elapsed"] if r["elapsed"] > 0 else 0
            print_row([r["files_ok"], r["failed"], f"{rps:.0f}", f"{r['elapsed']:.2f}s"], W)
            all_results.append({
                "test": "many", "ok": r["files_ok"], "failed": r["failed"],
                "rps": round(rps, 1), "elapsed": round(r["elapsed"], 2),
            })
        except Exception as exc:
            print_row(["FAIL", str(exc)[:40], "", ""], W)

        print_header("Uploads — /timed")
        W = [12, 16, 14]
        print_row(["Body", "Drain (us)", "Server rate"], W)
        print_sep(W)

        for body_bytes in UPLOADS:
            try:
                r = upload(url("/timed"), body_bytes)
                report = r["report"]
                rate = report["bytesPerSecond"] / 1024 / 1024
                print_row([body_bytes, f"{report['durationMicros']:.1f}", f"{rate:.1f} MB/s"], W)
                all_results.append({
                    "test": "upload", "body": body_bytes,
                    "drain_us": report["durationMicros"],
                    "bytes_read": report["bytesRead"],
                })
            except Exception as exc:
                print_row([body_bytes, "FAIL", str(exc)[:30]], W)

        out = os.path.join(BENCH_DIR, "results_payload.json")
        with open(out, "w") as f:
            json.dump(all_results, f, indent=2)
        print(f"\nResults saved to {out}")

    finally:
        stop_server(server)


if __name__ == "__main__":
    main()
