import argparse
import time

import stl_volume


def _bench_file(path: str, mode: str) -> float:
    with open(path, "rb") as f:
        buffer = f.read()
    started = time.perf_counter()
    triangles = stl_volume.triangle_count(buffer)
    volume_cm3 = stl_volume.decode_volume(buffer, mode=mode)
    elapsed_s = time.perf_counter() - started
    print(
        f"{mode:<6} file={path} triangles={triangles} "
        f"volume_cm3={volume_cm3:.9f} elapsed_s={elapsed_s:.6f}"
    )
    return volume_cm3


def main() -> None:
    parser = argparse.ArgumentParser(description="Benchmark fast vs stream volume decoding of a binary STL.")
    parser.add_argument("stl", help="Path to a binary STL file.")
    args = parser.parse_args()

    fast = _bench_file(args.stl, "fast")
    stream = _bench_file(args.stl, "stream")
    rel = abs(fast - stream) / stream if stream else abs(fast - stream)
    print(f"relative difference fast/stream: {rel:.3e}")


if __name__ == "__main__":
    main()
