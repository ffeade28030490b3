"""
Shared utility helpers for dexanno.

Covers subprocess execution with real-time logging, FASTA streaming,
file-size helpers, and elapsed-time formatting.
"""

from __future__ import annotations

import gzip
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Iterator, Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler

console = Console(stderr=True)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_logger: Optional[logging.Logger] = None


def get_logger(log_file: Optional[Path] = None) -> logging.Logger:
    """Return (and lazily configure) the package-wide logger."""
    global _logger
    if _logger is not None:
        return _logger

    _logger = logging.getLogger("dexanno")
    _logger.setLevel(logging.DEBUG)

    # Rich console handler (INFO+)
    rh = RichHandler(console=console, show_path=False, markup=True)
    rh.setLevel(logging.INFO)
    _logger.addHandler(rh)

    # File handler (DEBUG+), optional
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fmt = logging.Formatter("%(asctime)s  %(levelname)-8s  %(message)s")
        fh.setFormatter(fmt)
        _logger.addHandler(fh)

    return _logger


# ---------------------------------------------------------------------------
# Subprocess runner
# ---------------------------------------------------------------------------


def run_cmd(
    cmd: Sequence[str],
    *,
    desc: str = "",
    capture: bool = False,
    check: bool = True,
    env: Optional[dict] = None,
    cwd: Optional[Path] = None,
    timeout: Optional[int] = None,
    stdout_path: Optional[Path] = None,
) -> subprocess.CompletedProcess:
    """
    Execute an external command with logging and error handling.

    Parameters
    ----------
    cmd : list of str
        The command and its arguments.
    desc : str
        Human-readable description printed before execution.
    capture : bool
        If True, capture stdout/stderr and return them.
    check : bool
        If True, raise on non-zero exit code.
    env : dict, optional
        Extra environment variables (merged with os.environ).
    cwd : Path, optional
        Working directory.
    timeout : int, optional
        Maximum seconds to wait.
    stdout_path : Path, optional
        Redirect stdout into this file (cmscan writes its main report
        to stdout).  Takes precedence over *capture* for stdout.

    Returns
    -------
    subprocess.CompletedProcess
    """
    log = get_logger()

    cmd_str = " ".join(str(c) for c in cmd)
    if desc:
        log.info(f"[bold cyan]{desc}[/bold cyan]")
    log.debug(f"CMD: {cmd_str}")

    merged_env = {**os.environ, **(env or {})}
    start = time.perf_counter()

    out_fh = None
    if stdout_path is not None:
        ensure_parent(Path(stdout_path))
        out_fh = open(stdout_path, "w", encoding="utf-8")

    try:
        result = subprocess.run(
            [str(c) for c in cmd],
            stdout=out_fh if out_fh is not None else (subprocess.PIPE if capture else None),
            stderr=subprocess.PIPE if capture else subprocess.STDOUT,
            text=True,
            check=check,
            env=merged_env,
            cwd=str(cwd) if cwd else None,
            timeout=timeout,
        )
    except FileNotFoundError:
        log.error(f"Command not found: {cmd[0]}")
        raise
    except subprocess.CalledProcessError as exc:
        log.error(f"Command failed (exit {exc.returncode}): {cmd_str}")
        if exc.stderr:
            log.error(exc.stderr[:2000])
        raise
    except subprocess.TimeoutExpired:
        log.error(f"Command timed out after {timeout}s: {cmd_str}")
        raise
    finally:
        if out_fh is not None:
            out_fh.close()

    elapsed = time.perf_counter() - start
    log.debug(f"Finished in {fmt_elapsed(elapsed)}")
    return result


# ---------------------------------------------------------------------------
# FASTA streaming helpers (memory-efficient)
# ---------------------------------------------------------------------------


def _open_text(path: Path):
    opener = gzip.open if str(path).endswith(".gz") else open
    return opener(path, "rt")


def iter_fasta(path: Path) -> Iterator[tuple[str, str]]:
    """
    Yield ``(seq_id, sequence)`` pairs from a FASTA file.  Handles .gz.

    The ID is the first whitespace-delimited token of the header, which
    is what every annotation tool reports as the sequence name.
    """
    seq_id: Optional[str] = None
    chunks: list[str] = []
    with _open_text(path) as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            if line.startswith(">"):
                if seq_id is not None:
                    yield seq_id, "".join(chunks)
                header = line[1:].split()
                seq_id = header[0] if header else ""
                chunks = []
            elif seq_id is None:
                raise ValueError(f"{path} does not look like FASTA (no '>' header)")
            else:
                chunks.append(line)
    if seq_id is not None:
        yield seq_id, "".join(chunks)


def fasta_lengths(path: Path) -> dict[str, int]:
    """Return ``{seq_id: length}`` for every record in a FASTA file."""
    lengths: dict[str, int] = {}
    for seq_id, seq in iter_fasta(path):
        if seq_id in lengths:
            raise ValueError(f"Duplicate sequence ID '{seq_id}' in {path}")
        lengths[seq_id] = len(seq)
    return lengths


def genome_size(path: Path) -> int:
    """Total number of residues in a FASTA file."""
    return sum(fasta_lengths(path).values())


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def file_size_human(path: Path) -> str:
    """Return human-readable file size string."""
    size = path.stat().st_size
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} PB"


def fmt_elapsed(seconds: float) -> str:
    """Format seconds into H:MM:SS or M:SS."""
    h, rem = divmod(int(seconds), 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


def ensure_parent(path: Path) -> Path:
    """Create parent directories and return *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def genome_stem(genome: Path) -> str:
    """``/x/ecoli.fna.gz`` → ``ecoli``."""
    name = Path(genome).name
    for suffix in (".gz", ".fna", ".fasta", ".fa", ".fsa", ".ffn"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name
