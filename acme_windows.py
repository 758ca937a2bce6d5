"""
acme_windows.py  –  Enumerate acme windows and rank them by dirtiness/recency
=============================================================================

Key behaviours
  · Windows come from acme's file server through plan9port's `9p` command
    (`9p read acme/index`), one (id, name) pair per index line.
  · Each window's ctl record must hold exactly 8 fields; field 4 is the
    dirty flag.  A malformed record aborts the run, an unparseable flag is
    just "clean".
  · The window name is stat'ed as a path: missing -> "not a file", any other
    stat failure aborts.
  · Ranking: dirty first (no-file first, then newest file), then clean by
    newest file, with clean non-files last.
  · Nothing is retried.  Every collaborator failure raises an AcmeError that
    the CLI turns into a message on stderr and exit status 1.
"""

import enum
import functools
import json
import os
import stat
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple, Optional, TextIO

import psutil

# ══════════════════════════════════════════════════════════════════════════
#  Constants
# ══════════════════════════════════════════════════════════════════════════
CONFIG_PATH     = "acmetags.json"
DEFAULT_NINEP   = "9p"
DEFAULT_SERVICE = "acme"
CTL_FIELDS      = 8
CTL_DIRTY_FIELD = 4
TIMESTAMP_FMT   = "%Y%m%d-%H%M%S"

_TRUE_LITERALS  = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_LITERALS = {"0", "f", "F", "FALSE", "false", "False"}

# ══════════════════════════════════════════════════════════════════════════
#  Errors
# ══════════════════════════════════════════════════════════════════════════
class AcmeError(Exception):
    """Fatal failure while talking to acme or the filesystem."""

    def __init__(self, message: str, name: Optional[str] = None,
                 win_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.name   = name
        self.win_id = win_id


class EnumerationError(AcmeError):
    pass


class HandleOpenError(AcmeError):
    pass


class ReadError(AcmeError):
    pass


class MalformedControlError(AcmeError):
    pass


class StatError(AcmeError):
    pass


# ══════════════════════════════════════════════════════════════════════════
#  Data model
# ══════════════════════════════════════════════════════════════════════════
class WinInfo(NamedTuple):
    id: int
    name: str


class FileStat(NamedTuple):
    mod_time: float
    is_dir: bool


@dataclass(frozen=True)
class WindowRecord:
    id: int
    name: str
    dirty: bool
    mod_time: Optional[float] = None   # None -> not a file


class Ordering(enum.Enum):
    BEFORE      = -1
    UNSPECIFIED = 0
    AFTER       = 1


@dataclass(frozen=True)
class Config:
    output: Optional[str] = None
    timestamp: bool = False
    all_windows: bool = False          # accepted, enumeration is always "all"
    file_only: bool = False
    verbose: bool = False
    ninep: str = DEFAULT_NINEP
    service: str = DEFAULT_SERVICE


def load_config(path: str = CONFIG_PATH) -> Dict:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            d = json.load(f)
    except (OSError, ValueError):
        return {}
    return d if isinstance(d, dict) else {}


def diag(verbose: bool, msg: str) -> None:
    if verbose:
        print(msg, file=sys.stderr)


# ══════════════════════════════════════════════════════════════════════════
#  acme file server access (via plan9port 9p)
# ══════════════════════════════════════════════════════════════════════════
def _acme_running() -> bool:
    for proc in psutil.process_iter(["name"]):
        if (proc.info.get("name") or "").lower() == "acme":
            return True
    return False


def parse_index(data: bytes) -> List[WinInfo]:
    """Parse acme's index file.

    Each line is five 11-wide numeric columns (id, tag length, body length,
    is-dir, is-dirty) followed by the tag; the name is the tag's first word.
    """
    wins: List[WinInfo] = []
    # Names are raw bytes on disk; keep them stat-able.
    for line in os.fsdecode(data).splitlines():
        f = line.split()
        if len(f) < 6:
            continue
        try:
            wid = int(f[0])
        except ValueError:
            continue
        wins.append(WinInfo(wid, f[5]))
    return wins


class AcmeClient:
    """Thin wrapper over `9p` for one acme service."""

    def __init__(self, ninep: str = DEFAULT_NINEP,
                 service: str = DEFAULT_SERVICE) -> None:
        self.ninep   = ninep
        self.service = service

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run([self.ninep, *args], capture_output=True)

    @staticmethod
    def _reason(proc: subprocess.CompletedProcess) -> str:
        err = proc.stderr.decode("utf-8", errors="replace").strip()
        return err or f"exit status {proc.returncode}"

    def windows(self) -> List[WinInfo]:
        path = f"{self.service}/index"
        try:
            proc = self._run("read", path)
        except OSError as exc:
            raise EnumerationError(f"could not get acme windows: {exc}") from exc
        if proc.returncode != 0:
            msg = f"could not get acme windows: {self._reason(proc)}"
            if not _acme_running():
                msg += " (no acme process is running)"
            raise EnumerationError(msg)
        return parse_index(proc.stdout)

    def open(self, win: WinInfo) -> "AcmeWindow":
        path = f"{self.service}/{win.id}"
        try:
            proc = self._run("stat", path)
        except OSError as exc:
            raise HandleOpenError(
                f"could not open window ({win.name}, {win.id}): {exc}",
                win.name, win.id) from exc
        if proc.returncode != 0:
            raise HandleOpenError(
                f"could not open window ({win.name}, {win.id}): {self._reason(proc)}",
                win.name, win.id)
        return AcmeWindow(self, win)


class AcmeWindow:
    """An opened acme window; use as a context manager."""

    def __init__(self, client: AcmeClient, win: WinInfo) -> None:
        self._client = client
        self.info    = win
        self.closed  = False

    def read_all(self, file: str) -> bytes:
        if self.closed:
            raise ReadError(f"window ({self.info.name}, {self.info.id}) is closed",
                            self.info.name, self.info.id)
        path = f"{self._client.service}/{self.info.id}/{file}"
        try:
            proc = self._client._run("read", path)
        except OSError as exc:
            raise ReadError(
                f"could not read {file} file of ({self.info.name}, {self.info.id}): {exc}",
                self.info.name, self.info.id) from exc
        if proc.returncode != 0:
            raise ReadError(
                f"could not read {file} file of ({self.info.name}, {self.info.id}): "
                f"{self._client._reason(proc)}",
                self.info.name, self.info.id)
        return proc.stdout

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "AcmeWindow":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# ══════════════════════════════════════════════════════════════════════════
#  Control record / filesystem
# ══════════════════════════════════════════════════════════════════════════
def parse_bool(token: str) -> Optional[bool]:
    if token in _TRUE_LITERALS:
        return True
    if token in _FALSE_LITERALS:
        return False
    return None


def parse_control(raw: bytes, name: str, win_id: int) -> bool:
    """Return the dirty flag of a ctl record; anything but a true literal is False."""
    fields = raw.split()
    if len(fields) != CTL_FIELDS:
        raise MalformedControlError(
            f"unexpected number of fields for ({name}, {win_id}): "
            f"wanted {CTL_FIELDS}, got {len(fields)}", name, win_id)
    token = fields[CTL_DIRTY_FIELD].decode("utf-8", errors="replace")
    return parse_bool(token) is True


def stat_path(name: str, win_id: Optional[int] = None) -> Optional[FileStat]:
    try:
        st = os.stat(name)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        raise StatError(
            f"could not stat disk file of ({name}, {win_id}): {exc}",
            name, win_id) from exc
    return FileStat(st.st_mtime, stat.S_ISDIR(st.st_mode))


def collect_windows(client: AcmeClient, file_only: bool = False,
                    verbose: bool = False) -> List[WindowRecord]:
    records: List[WindowRecord] = []
    for win in client.windows():
        with client.open(win) as w:
            dirty = parse_control(w.read_all("ctl"), win.name, win.id)
        fs = stat_path(win.name, win.id)
        if file_only and (fs is None or fs.is_dir):
            diag(verbose, f"  SKIP  [{win.id}] {win.name}")
            continue
        rec = WindowRecord(win.id, win.name, dirty,
                           fs.mod_time if fs is not None else None)
        diag(verbose, f"  WIN   [{rec.id}] dirty={rec.dirty} "
                       f"mtime={rec.mod_time}  {rec.name}")
        records.append(rec)
    return records


# ══════════════════════════════════════════════════════════════════════════
#  Ranking
# ══════════════════════════════════════════════════════════════════════════
def _by_recency(a: Optional[float], b: Optional[float]) -> Ordering:
    # Absent sorts as the oldest possible time.
    if a is None and b is None:
        return Ordering.UNSPECIFIED
    if b is None:
        return Ordering.BEFORE
    if a is None:
        return Ordering.AFTER
    if a > b:
        return Ordering.BEFORE
    if a < b:
        return Ordering.AFTER
    return Ordering.UNSPECIFIED


def compare(a: WindowRecord, b: WindowRecord) -> Ordering:
    if a.dirty and not b.dirty:
        return Ordering.BEFORE
    if b.dirty and not a.dirty:
        return Ordering.AFTER
    if a.dirty:
        # Among dirty windows, unsaved non-files come first.
        if a.mod_time is None and b.mod_time is None:
            return Ordering.UNSPECIFIED
        if a.mod_time is None:
            return Ordering.BEFORE
        if b.mod_time is None:
            return Ordering.AFTER
    return _by_recency(a.mod_time, b.mod_time)


def rank(records: Iterable[WindowRecord]) -> List[WindowRecord]:
    return sorted(records, key=functools.cmp_to_key(lambda a, b: compare(a, b).value))


# ══════════════════════════════════════════════════════════════════════════
#  Reporting
# ══════════════════════════════════════════════════════════════════════════
def format_line(rec: WindowRecord, label_style: str = "bool") -> str:
    if label_style == "bool":
        label = "true" if rec.dirty else "false"
    elif label_style == "word":
        label = "dirty" if rec.dirty else "clean"
    else:
        raise ValueError(f"Unknown label style: {label_style}")
    return f"{label}\t{rec.name}\n"


def render_report(records: Iterable[WindowRecord], label_style: str = "bool",
                  leading_blank: bool = False) -> str:
    lines = [format_line(r, label_style) for r in records]
    return ("\n" if leading_blank else "") + "".join(lines)


def timestamped(path: str, now: Optional[float] = None) -> str:
    stamp = time.strftime(TIMESTAMP_FMT, time.localtime(now))
    return f"{path}.{stamp}"


def _output_mode(path: str) -> int:
    """Mode of the existing file, else 0666 under the process umask."""
    try:
        return stat.S_IMODE(os.stat(path).st_mode)
    except FileNotFoundError:
        pass
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def write_report(text: str, output: Optional[str] = None, timestamp: bool = False,
                 stream: Optional[TextIO] = None) -> Optional[str]:
    """Write the report to `stream` (stdout) or to `output`.

    A file is only replaced when there is something to write, and only once
    the full text is on disk next to it.
    """
    if output is None:
        out = stream or sys.stdout
        buf = getattr(out, "buffer", None)
        if buf is None:
            out.write(text)
        else:
            out.flush()
            buf.write(text.encode(out.encoding or "utf-8", "surrogateescape"))
            buf.flush()
        return None
    if not text:
        return None
    path = timestamped(output) if timestamp else output
    target_dir = os.path.dirname(os.path.abspath(path))
    mode = _output_mode(path)
    fd, tmp = tempfile.mkstemp(prefix=".acmetags-", dir=target_dir)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape") as f:
            f.write(text)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    return path
