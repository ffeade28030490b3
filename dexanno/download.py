"""
Reference data download module.

Handles downloading and indexing of the Rfam covariance-model library
used by cmscan:
  • ``Rfam.cm``     : all Rfam covariance models (gzipped on the FTP)
  • ``Rfam.clanin`` : clan membership, needed for ``--clanin``
"""

from __future__ import annotations

import gzip
import shutil
from pathlib import Path

import requests
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from dexanno.ncrna import ensure_cmpress
from dexanno.utils import get_logger

# ---------------------------------------------------------------------------
# Public URLs for reference databases
# ---------------------------------------------------------------------------

RFAM_BASE = "https://ftp.ebi.ac.uk/pub/databases/Rfam"

RFAM_FILES = {
    "cm": "Rfam.cm.gz",
    "clanin": "Rfam.clanin",
}

# ---------------------------------------------------------------------------
# Streaming download with progress
# ---------------------------------------------------------------------------


def _download_file(
    url: str,
    dest: Path,
    *,
    desc: str = "Downloading",
    chunk_size: int = 1024 * 1024,  # 1 MB chunks
) -> Path:
    """Stream-download *url* to *dest* with a Rich progress bar."""
    log = get_logger()
    dest.parent.mkdir(parents=True, exist_ok=True)

    if dest.exists():
        log.info(f"File already exists, skipping download: {dest.name}")
        return dest

    log.info(f"Downloading {desc}: {url}")
    resp = requests.get(url, stream=True, timeout=60)
    resp.raise_for_status()
    total = int(resp.headers.get("content-length", 0))

    partial = dest.with_name(dest.name + ".part")
    with Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
    ) as progress:
        task = progress.add_task(desc, total=total or None)
        with open(partial, "wb") as fh:
            for chunk in resp.iter_content(chunk_size=chunk_size):
                fh.write(chunk)
                progress.advance(task, len(chunk))
    partial.rename(dest)

    log.info(f"Saved to {dest}  ({dest.stat().st_size / 1e6:.1f} MB)")
    return dest


def _gunzip(archive: Path, dest: Path) -> Path:
    """Decompress a .gz file next to itself (keeps the archive)."""
    log = get_logger()
    if dest.exists():
        return dest
    log.info(f"Decompressing {archive.name} → {dest.name}")
    with gzip.open(archive, "rb") as src, open(dest, "wb") as out:
        shutil.copyfileobj(src, out)
    return dest


# ---------------------------------------------------------------------------
# High-level download functions
# ---------------------------------------------------------------------------


def download_rfam(
    out_dir: Path,
    *,
    release: str = "CURRENT",
    press: bool = True,
) -> dict[str, Path]:
    """
    Download Rfam.cm and Rfam.clanin for *release* (e.g. ``"14.10"``).

    With *press* the models are indexed with ``cmpress`` so cmscan can
    use them straight away.

    Returns a dict with keys 'cm' and 'clanin'.
    """
    log = get_logger()
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    base = f"{RFAM_BASE}/{release}"

    cm_gz = _download_file(f"{base}/{RFAM_FILES['cm']}", out_dir / RFAM_FILES["cm"], desc="Rfam.cm")
    clanin = _download_file(
        f"{base}/{RFAM_FILES['clanin']}", out_dir / RFAM_FILES["clanin"], desc="Rfam.clanin"
    )
    cm = _gunzip(cm_gz, out_dir / "Rfam.cm")

    if press:
        ensure_cmpress(cm)
    log.info(f"Rfam {release} ready at {out_dir}")
    return {"cm": cm, "clanin": clanin}
