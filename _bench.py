"""Loopback throughput benchmark for the peerdrop engines."""
import os, tempfile, time, pathlib, sys, threading
sys.path.insert(0, str(pathlib.Path(__file__).parent))
from peerdrop.session import ReceiveSession, SendSession
from peerdrop.transfer import build_batch

def run_test(size_mb: int, label: str) -> None:
    tmp = tempfile.mkdtemp()
    src = os.path.join(tmp, f"bench_{size_mb}mb.bin")
    chunk = bytes(range(256)) * 512  # 128 KB block
    with open(src, "wb") as f:
        written = 0
        while written < size_mb * 1024 * 1024:
            f.write(chunk)
            written += len(chunk)

    recv_dir = os.path.join(tmp, "received")

    entries = build_batch([src])
    actual_size = sum(e.size for e in entries)

    sender = SendSession(entries, host="127.0.0.1", port=0)
    port = sender.bind()[1]
    t = threading.Thread(target=sender.run, daemon=True)
    t.start()

    t0 = time.perf_counter()
    ReceiveSession("127.0.0.1", sender.code, recv_dir, port=port).run()
    dt = time.perf_counter() - t0
    t.join(timeout=10)

    dst = pathlib.Path(recv_dir) / pathlib.Path(src).name
    assert dst.exists(), f"File missing: {dst}"
    assert dst.stat().st_size == actual_size, "Size mismatch!"

    speed = actual_size / dt / 1e6
    print(f"  {label:30s}  {actual_size/1e6:7.1f} MB  {dt:6.3f}s  {speed:8.1f} MB/s")

print(f"\n{'Test':<32}  {'Size':>7}  {'Time':>6}  {'Speed':>10}")
print("-" * 62)
run_test(10,  "10 MB")
run_test(50,  "50 MB")
run_test(250, "250 MB")
print("\nAll benchmarks passed!")
