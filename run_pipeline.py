import argparse
import os
import subprocess
import sys
import time
from typing import Dict, List, Optional, Tuple

from geo_io import log


STAGES = [
    ("download", "download_statcan.py"),
    ("table", "build_da_table.py"),
    ("join", "join_da_boundaries.py"),
    ("static", "map_bivariate_da.py"),
    ("interactive", "present_interactive_maps.py"),
]


def stage_args(args: argparse.Namespace) -> Dict[str, List[str]]:
    """Per-stage flags forwarded from the runner's own options."""
    table = ["--cma-name", args.cma_name]
    join = ["--cma-name", args.cma_name]
    classify = ["--palette", args.palette]
    if args.classes:
        classify += ["--classes", str(args.classes)]
    static = list(classify)
    if args.dem:
        static += ["--dem", args.dem]
    return {"download": [], "table": table, "join": join, "static": static, "interactive": classify}


def run_stage(label: str, path: str, extra: List[str]) -> Tuple[str, int, float]:
    print(f"\n=== [{label}] {os.path.basename(path)} {' '.join(extra)} ===", flush=True)
    if not os.path.exists(path):
        log(f"[WARN] {path} not found; stage skipped.")
        return (label, 0, 0.0)
    t0 = time.time()
    proc = subprocess.run([sys.executable, "-u", path] + extra)
    return (label, proc.returncode, time.time() - t0)


def main(argv: Optional[List[str]] = None):
    ap = argparse.ArgumentParser(description="Run the DA bivariate map pipeline from download to interactive maps.")
    ap.add_argument("--only", choices=[k for k, _ in STAGES], nargs="*", help="Run only selected stages (default: all)")
    ap.add_argument("--skip-download", action="store_true", help="Reuse whatever is already in data_raw/")
    ap.add_argument("--stop-on-error", action="store_true", help="Stop at the first failing stage (default: continue)")
    ap.add_argument("--cma-name", default="Vancouver")
    ap.add_argument("--palette", default="DkBlue")
    ap.add_argument("--classes", type=int, default=None)
    ap.add_argument("--dem", default=None, help="DEM GeoTIFF for the static relief layer")
    args = ap.parse_args(argv)

    here = os.path.dirname(os.path.abspath(__file__))
    wanted = set(args.only) if args.only else {k for k, _ in STAGES}
    if args.skip_download:
        wanted.discard("download")
    forwarded = stage_args(args)

    results = []
    for label, script in STAGES:
        if label not in wanted:
            continue
        res = run_stage(label, os.path.join(here, script), forwarded[label])
        results.append(res)
        if res[1] != 0 and args.stop_on_error:
            log(f"[ERROR] {label} failed with code {res[1]}; later stages not run.")
            break

    print("\n=== Summary ===")
    for lbl, code, secs in results:
        status = "OK" if code == 0 else f"FAIL({code})"
        print(f"- {lbl}: {status} ({secs:.1f}s)")

    # Non-zero exit if any failed
    if any(code != 0 for _, code, _ in results):
        sys.exit(1)


if __name__ == "__main__":
    main()
