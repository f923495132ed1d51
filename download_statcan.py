import argparse
import re
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import requests

from geo_io import RAW_DIR, log


# Define datasets as name: URL pairs
DATASETS = {
    # Census Profile 2016, DAs, British Columbia (GEONO=070)
    "census_profile_bc": "https://www12.statcan.gc.ca/census-recensement/2016/dp-pd/prof/details/download-telecharger/comp/GetFile.cfm?Lang=E&FILETYPE=CSV&GEONO=070",
    # Proximity Measures Database, dissemination block level
    "pmd": "https://www150.statcan.gc.ca/pub/17-26-0002/2020001/csv/pmd-eng.zip",
    # 2016 DA boundary file (cartographic)
    "da_boundaries": "https://www12.statcan.gc.ca/census-recensement/2011/geo/bound-limit/files-fichiers/2016/lda_000b16a_e.zip",
}

CHUNK = 1 << 20


def _sanitize(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_\-]+", "_", name.strip()).strip("_")


def download_file(url: str, dest: Path, timeout: int = 120) -> Path:
    """Stream a URL to disk; keeps an existing file instead of downloading again."""
    if dest.exists() and dest.stat().st_size > 0:
        log(f"[INFO] Using cached {dest}")
        return dest
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_suffix(dest.suffix + ".part")
    with requests.get(url, stream=True, timeout=timeout) as r:
        r.raise_for_status()
        with open(tmp, "wb") as f:
            for chunk in r.iter_content(chunk_size=CHUNK):
                if chunk:
                    f.write(chunk)
    tmp.replace(dest)
    log(f"[OK] Downloaded {dest} ({dest.stat().st_size / 1e6:.1f} MB)")
    return dest


def extract_zip(archive: Path, out_dir: Path) -> List[Path]:
    if not zipfile.is_zipfile(archive):
        log(f"[INFO] {archive.name} is not a zip archive; leaving as-is")
        return [archive]
    out_dir.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(archive) as zf:
        zf.extractall(out_dir)
        names = zf.namelist()
    log(f"[OK] Extracted {len(names)} files -> {out_dir}")
    return [out_dir / n for n in names]


def download_dataset(name: str, url: str, raw_dir: Path) -> List[Path]:
    base = _sanitize(name)
    archive = download_file(url, raw_dir / f"{base}.zip")
    return extract_zip(archive, raw_dir / base)


def main(argv: Optional[List[str]] = None):
    ap = argparse.ArgumentParser(description="Download Census Profile, Proximity Measures and DA boundaries from Statistics Canada.")
    ap.add_argument("--out-dir", default=RAW_DIR)
    ap.add_argument("--only", choices=list(DATASETS), nargs="*", help="Download only selected datasets (default: all)")
    ap.add_argument("--url", action="append", default=[], metavar="NAME=URL", help="Override a dataset URL")
    args = ap.parse_args(argv)

    urls: Dict[str, str] = dict(DATASETS)
    for item in args.url:
        name, sep, url = item.partition("=")
        if not sep or name not in urls:
            ap.error(f"--url expects one of {list(urls)} as NAME=URL, got {item!r}")
        urls[name] = url

    raw_dir = Path(args.out_dir)
    targets = args.only or list(urls)
    failed = []
    for name in targets:
        try:
            download_dataset(name, urls[name], raw_dir)
        except (requests.RequestException, zipfile.BadZipFile, OSError) as e:
            log(f"[ERROR] Failed for {name}: {e}")
            failed.append(name)
    if failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
