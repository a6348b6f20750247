"""Shared infrastructure for benchmark scripts.

Handles the dali-server process lifecycle and download client processes.
"""

import json
import os
import socket
import subprocess
import sys
import time

BENCH_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_DIR = os.path.dirname(BENCH_DIR)
PYTHON = sys.executable

HOST = "127.0.0.1"
PORT = 18080


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def wait_tcp(host, port, timeout=30):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with socket.create_connection((host, port), timeout=2):
                return True
        except OSError:
            time.sleep(0.3)
    return False


# ---------------------------------------------------------------------------
# Server management (separate process, like real usage)
# ---------------------------------------------------------------------------

def start_server(locations, port=PORT):
    """Start dali-server --cli as a real subprocess.

    locations is a list of PATH=SIZE[:STRATEGY] values.
    Returns Popen.
    """
    args = [PYTHON, "-m", "dali_server.cli", "--cli", "-H", HOST, "-p", str(port)]
    for location in locations:
        args += ["-l", location]
    proc = subprocess.Popen(args, cwd=PROJECT_DIR, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)

    if not wait_tcp(HOST, port, timeout=10):
        proc.kill()
        stderr = proc.stderr.read().decode()
        raise RuntimeError(f"dali-server not reachable on :{port}: {stderr[:200]}")

    return proc


def stop_server(proc):
    proc.terminate()
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        proc.kill()


def url(path, port=PORT):
    return f"http://{HOST}:{port}{path}"


# ---------------------------------------------------------------------------
# Download client (separate process, like a browser)
# ---------------------------------------------------------------------------

def _run_helper(*args, timeout=600):
    result = subprocess.run(
        [PYTHON, os.path.join(BENCH_DIR, "download_helper.py"), *map(str, args)],
        capture_output=True, text=True, timeout=timeout,
    )
    if result.returncode != 0:
        raise RuntimeError(f"download failed: {result.stderr[:200]}")
    return json.loads(result.stdout.strip())


def download_single(target, byte_range=None):
    """Run download_helper.py single as a subprocess. Returns dict."""
    if byte_range:
        return _run_helper("single", target, byte_range)
    return _run_helper("single", target)


def download_many(target, count):
    """Run download_helper.py many as a subprocess. Returns dict."""
    return _run_helper("many", target, count)


def upload(target, body_bytes):
    """Run download_helper.py upload as a subprocess. Returns dict."""
    return _run_helper("upload", target, body_bytes)


# ---------------------------------------------------------------------------
# Table printing
# ---------------------------------------------------------------------------

def print_row(cols, widths):
    print("  " + " | ".join(str(c).ljust(w) for c, w in zip(cols, widths)))


def print_sep(widths):
    print("  " + "-+-".join("-" * w for w in widths))


def print_header(title):
    print()
    print("=" * 70)
    print(f"  {title}")
    print("=" * 70)
