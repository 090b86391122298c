#!/usr/bin/env python3
"""
Performance checks for relay admission control and the share store.

Tests:
1. Many unique clients: registry growth and memory per identity
2. Hot identities under thread contention (shared-lock read path)
3. SQLite store put/get/purge throughput

Usage:
    python dev/scripts/limiter_perf.py
"""

import sys
import threading
import time
from datetime import timedelta
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from relay.limiter import RateLimiterRegistry
from relay.share_store import SQLiteShareStore


def format_bytes(size):
    """Format bytes to human-readable string."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{size:.2f} TB"


def get_memory_usage():
    """Get current process memory usage in bytes."""
    try:
        import psutil

        process = psutil.Process()
        return process.memory_info().rss
    except ImportError:
        # Fallback if psutil not available
        return None


def test_many_unique_clients():
    """Admit 200k distinct identities and report registry growth."""
    print("\n" + "=" * 70)
    print("TEST 1: Many Unique Clients")
    print("=" * 70)

    registry = RateLimiterRegistry()
    clients = 200_000

    start_memory = get_memory_usage()
    start_time = time.time()
    for i in range(clients):
        assert registry.allow(f"10.{i >> 16 & 255}.{i >> 8 & 255}.{i & 255}:{i}")
    duration = time.time() - start_time
    end_memory = get_memory_usage()

    print(f"✓ Tracked {len(registry)} identities")
    print(f"  Duration: {duration:.2f}s ({clients / duration:.0f} new clients/s)")
    if start_memory and end_memory:
        delta = end_memory - start_memory
        print(f"  Memory delta: {format_bytes(delta)} ({format_bytes(delta / clients)} per identity)")

    # Idle eviction reclaims everything once the clients go quiet
    now = [0.0]
    evicting = RateLimiterRegistry(idle_ttl=60, clock=lambda: now[0])
    for i in range(clients // 4):
        evicting.allow(f"client-{i}")
    now[0] = 120.0
    evicted = evicting.evict_idle()
    assert evicted == clients // 4
    print(f"✓ Evicted {evicted} idle identities, {len(evicting)} left")

    print("\n✓ TEST 1 PASSED")


def test_hot_identities_under_contention():
    """Hammer a small set of known identities from many threads."""
    print("\n" + "=" * 70)
    print("TEST 2: Hot Identities Under Contention")
    print("=" * 70)

    for threads in (1, 4, 16, 64):
        registry = RateLimiterRegistry(tokens=1_000_000, interval=1, burst=1_000_000)
        calls_per_thread = 20_000
        hot = [f"hot-{i}" for i in range(8)]

        def worker():
            for i in range(calls_per_thread):
                registry.allow(hot[i % len(hot)])

        pool = [threading.Thread(target=worker) for _ in range(threads)]
        start_time = time.time()
        for t in pool:
            t.start()
        for t in pool:
            t.join()
        duration = time.time() - start_time

        total = threads * calls_per_thread
        print(f"  {threads:>3} threads: {total:>8} calls in {duration:.2f}s ({total / duration:.0f}/s)")
        assert len(registry) == len(hot)

    print("\n✓ TEST 2 PASSED")


def test_sqlite_store_throughput():
    """Measure put/get/purge rates on a file-backed SQLite store."""
    print("\n" + "=" * 70)
    print("TEST 3: SQLite Store Throughput")
    print("=" * 70)

    test_dir = Path("dev/test_data/perf_relay")
    test_dir.mkdir(parents=True, exist_ok=True)
    db_path = test_dir / "relay.db"
    if db_path.exists():
        db_path.unlink()

    store = SQLiteShareStore(f"sqlite:///{db_path}")
    rows = 20_000
    blob = "Q" * 1024

    start_time = time.time()
    for i in range(rows):
        # every other share is already expired
        ttl = timedelta(minutes=10) if i % 2 else timedelta(seconds=-1)
        store.put(f"CODE{i:06d}", blob, ttl)
    put_duration = time.time() - start_time

    start_time = time.time()
    found = 0
    for i in range(1, rows, 2):
        found += len(store.get(f"CODE{i:06d}").data) > 0
    get_duration = time.time() - start_time

    start_time = time.time()
    removed = store.purge_expired()
    purge_duration = time.time() - start_time
    store.close()

    print(f"  put:   {rows} rows in {put_duration:.2f}s ({rows / put_duration:.0f}/s)")
    print(f"  get:   {found} rows in {get_duration:.2f}s ({found / get_duration:.0f}/s)")
    print(f"  purge: {removed} rows in {purge_duration * 1000:.1f}ms")
    assert removed == rows // 2

    db_path.unlink()
    print("✓ Cleanup complete")
    print("\n✓ TEST 3 PASSED")


def main():
    """Run all performance tests."""
    print("\n" + "=" * 70)
    print("RELAY ADMISSION & STORE PERFORMANCE TESTS")
    print("=" * 70)

    try:
        import psutil  # noqa: F401

        print("✓ Memory profiling enabled (psutil available)")
    except ImportError:
        print("⚠ Memory profiling disabled (psutil not installed)")
        print("  Install with: pip install psutil")

    start_time = time.time()

    try:
        test_many_unique_clients()
        test_hot_identities_under_contention()
        test_sqlite_store_throughput()

        total_duration = time.time() - start_time

        print("\n" + "=" * 70)
        print(f"ALL TESTS PASSED in {total_duration:.2f}s")
        print("=" * 70)

        return 0

    except AssertionError as e:
        print(f"\n✗ TEST FAILED: {e}")
        return 1
    except Exception as e:
        print(f"\n✗ UNEXPECTED ERROR: {e}")
        import traceback

        traceback.print_exc()
        return 1


if __name__ == "__main__":
    exit_code = main()
    sys.exit(exit_code)
