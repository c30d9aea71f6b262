#!/usr/bin/env python3
"""
Universal ASAR - Complete Python Implementation
Merges the x64 and arm64 builds of an Electron app.asar into one universal archive

Merge Features:
- Manifest reconciliation with byte-for-byte comparison of shared files
- Allow-list gate for files that legitimately exist in only one architecture
- Mach-O validation before any divergent file is handed to lipo
- Scoped temporary workspace that is always removed, success or failure
- Atomic archive writes that carry unpacked entries forward
"""

import argparse
import asyncio
import difflib
import enum
import functools
import hashlib
import json
import os
import posixpath
import re
import shutil
import stat
import struct
import subprocess
import sys
import tempfile
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)
import logging


# Async helper for running blocking I/O in thread pool
async def run_in_thread(func: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a blocking function in a thread pool for true async I/O.

    Uses asyncio.to_thread() for Python 3.9+ (more efficient),
    falls back to run_in_executor() for Python 3.8.
    """
    if sys.version_info >= (3, 9):
        return await asyncio.to_thread(func, *args, **kwargs)
    else:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None, functools.partial(func, *args, **kwargs)
        )


try:
    from rich.console import Console
    from rich.progress import (
        Progress,
        SpinnerColumn,
        TextColumn,
        BarColumn,
        TimeElapsedColumn,
        MofNCompleteColumn,
    )

    HAS_RICH = True
except ImportError:
    HAS_RICH = False
    Console = None
    Progress = None

try:
    from tqdm import tqdm

    HAS_TQDM = True
except ImportError:
    HAS_TQDM = False
    tqdm = None


__version__ = "1.0.0"
__author__ = "Universal ASAR Project"
__license__ = "MIT"

PathLike = Union[str, Path]

logger = logging.getLogger("universal_asar")

LIPO = "lipo"

# See llvm/Object/MachOFormat.h
MACHO_MAGIC = frozenset(
    {
        # 32-bit Mach-O
        0xFEEDFACE,
        0xCEFAEDFE,
        # 64-bit Mach-O
        0xFEEDFACF,
        0xCFFAEDFE,
    }
)

APP_ASAR_LOCATION = ("Contents", "Resources", "app.asar")
UNPACKED_SUFFIX = ".unpacked"
INTEGRITY_BLOCK_SIZE = 4 * 1024 * 1024
COPY_BUFFER_SIZE = 64 * 1024
MAX_LINK_DEPTH = 40


class AsarMode(enum.Enum):
    """Whether an app bundle ships its resources in app.asar"""

    NO_ASAR = 0
    HAS_ASAR = 1


class EntryKind(enum.Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class ArchiveEntry:
    """Snapshot of a single archive entry taken when the manifest is listed"""

    path: str
    kind: EntryKind
    unpacked: bool = False

    @property
    def is_directory(self) -> bool:
        return self.kind is EntryKind.DIRECTORY


@dataclass
class ReconciliationResult:
    """Partition of the x64 and arm64 manifests.

    unique_to_x64, unique_to_arm64, identical_common, divergent_common and
    common_directories are pairwise disjoint and together cover every path
    of both manifests.
    """

    unique_to_x64: Set[str] = field(default_factory=set)
    unique_to_arm64: Set[str] = field(default_factory=set)
    identical_common: Set[str] = field(default_factory=set)
    divergent_common: Set[str] = field(default_factory=set)
    common_directories: Set[str] = field(default_factory=set)


@dataclass
class MergePlan:
    """Everything decided before the workspace is created"""

    x64_manifest: Dict[str, ArchiveEntry]
    arm64_manifest: Dict[str, ArchiveEntry]
    reconciliation: ReconciliationResult
    unpacked: Set[str]


@dataclass
class AsarIntegrity:
    algorithm: str
    hash: str

    def to_dict(self) -> Dict[str, str]:
        return {"algorithm": self.algorithm, "hash": self.hash}


class UniversalAsarError(Exception):
    """Base exception for universal asar errors"""

    pass


class SecurityError(UniversalAsarError):
    """Security-related errors such as path traversal attempts"""

    pass


class UnmatchedUniqueFileError(UniversalAsarError):
    """An entry present in only one archive is not covered by the allow pattern"""

    def __init__(self, archive: PathLike, path: str, pattern: Optional[str]):
        self.archive = str(archive)
        self.path = path
        self.pattern = pattern
        super().__init__(
            f'Detected unique file "{path}" in "{archive}" not covered by '
            f'allowList rule: "{pattern}"'
        )


class NonBinaryDivergenceError(UniversalAsarError):
    """A file differs between the archives but is not a Mach-O binary"""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Can't reconcile two non-macho files {path}")


class EntryKindMismatchError(UniversalAsarError):
    """A path is a directory in one archive and a file in the other"""

    def __init__(self, path: str):
        self.path = path
        super().__init__(
            f"Entry {path} is a directory in one archive and a file in the other"
        )


class BinaryMergeError(UniversalAsarError):
    """The binary merge tool failed"""

    def __init__(self, path: str, exit_status: Optional[int], stderr: str = ""):
        self.path = path
        self.exit_status = exit_status
        self.stderr = stderr
        message = f"Failed to merge binary {path} (exit status {exit_status})"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(message)


class ArchiveIOError(UniversalAsarError):
    """Extraction, copy, pack or removal failure"""

    def __init__(self, operation: str, path: PathLike, cause: Any):
        self.operation = operation
        self.path = str(path)
        self.cause = cause
        super().__init__(f"{operation} failed for {path}: {cause}")


class WorkspaceCleanupError(UniversalAsarError):
    """One or more workspace directories could not be removed"""

    def __init__(self, failures: List[Tuple[Path, OSError]]):
        self.failures = failures
        details = ", ".join(f"{path}: {error}" for path, error in failures)
        super().__init__(f"Failed to remove workspace directories: {details}")


def to_relative_path(path: str) -> str:
    """Strip the leading separator asar uses for package listings"""
    return path[1:] if path.startswith("/") else path


def _sanitize_path(base_dir: Path, unsafe_relative_path: str) -> Path:
    """
    Sanitize and validate extraction path to prevent path traversal attacks.

    Args:
        base_dir: The extraction root
        unsafe_relative_path: Entry path or link target read from an archive header

    Returns:
        Safe absolute path within base_dir

    Raises:
        SecurityError: If the path would escape the base directory
    """
    base_dir = base_dir.resolve()

    normalized_path = unsafe_relative_path.replace("\\", "/").lstrip("/")

    if "\x00" in normalized_path:
        raise SecurityError(
            f"Path contains null bytes (potential injection): {repr(unsafe_relative_path)}"
        )

    target_path = (base_dir / normalized_path).resolve()

    try:
        target_path.relative_to(base_dir)
    except ValueError:
        raise SecurityError(
            f"Path traversal attempt detected: '{unsafe_relative_path}' "
            f"would escape output directory '{base_dir}'"
        )

    return target_path


def read_raw_header(archive_path: PathLike) -> Tuple[str, int]:
    """Read the JSON header string of an asar archive.

    Returns the header string and the offset at which file data begins.
    """
    archive_path = Path(archive_path)
    try:
        with open(archive_path, "rb") as f:
            size_pickle = f.read(8)
            if len(size_pickle) < 8:
                raise ArchiveIOError(
                    "read header", archive_path, "file too small to be an asar archive"
                )
            _, header_size = struct.unpack("<II", size_pickle)

            header_pickle = f.read(header_size)
            if header_size < 8 or len(header_pickle) != header_size:
                raise ArchiveIOError("read header", archive_path, "truncated header")

            string_length = struct.unpack_from("<i", header_pickle, 4)[0]
            if string_length < 0 or 8 + string_length > header_size:
                raise ArchiveIOError(
                    "read header", archive_path, "corrupt header string length"
                )

            header_string = header_pickle[8 : 8 + string_length].decode("utf-8")
    except OSError as e:
        raise ArchiveIOError("read header", archive_path, e) from e
    except UnicodeDecodeError as e:
        raise ArchiveIOError("read header", archive_path, e) from e

    return header_string, 8 + header_size


def _encode_header(header: Dict) -> bytes:
    """Serialize a header dict into the size pickle + header pickle prefix"""
    header_string = json.dumps(header, separators=(",", ":"))
    data = header_string.encode("utf-8")

    # Pickle payloads are aligned to uint32
    padding = (4 - len(data) % 4) % 4
    payload = struct.pack("<i", len(data)) + data + b"\x00" * padding
    header_pickle = struct.pack("<I", len(payload)) + payload
    size_pickle = struct.pack("<II", 4, len(header_pickle))

    return size_pickle + header_pickle


def _file_integrity(file_path: Path) -> Dict[str, Any]:
    """Whole-file and per-block SHA256 digests, as asar records them"""
    file_hash = hashlib.sha256()
    blocks = []
    with open(file_path, "rb") as f:
        while True:
            block = f.read(INTEGRITY_BLOCK_SIZE)
            if not block:
                break
            file_hash.update(block)
            blocks.append(hashlib.sha256(block).hexdigest())

    if not blocks:
        blocks.append(hashlib.sha256(b"").hexdigest())

    return {
        "algorithm": "SHA256",
        "hash": file_hash.hexdigest(),
        "blockSize": INTEGRITY_BLOCK_SIZE,
        "blocks": blocks,
    }


class AsarArchive:
    """Read access to an asar archive, plus packing a directory into one"""

    def __init__(self, path: PathLike):
        self.path = Path(path)
        self._header: Optional[Dict] = None
        self._header_string: Optional[str] = None
        self._data_offset = 0

    def __repr__(self) -> str:
        return f"AsarArchive({str(self.path)!r})"

    @property
    def unpacked_dir(self) -> Path:
        return Path(str(self.path) + UNPACKED_SUFFIX)

    def _load(self) -> Dict:
        if self._header is None:
            header_string, data_offset = read_raw_header(self.path)
            try:
                header = json.loads(header_string)
            except ValueError as e:
                raise ArchiveIOError("parse header", self.path, e) from e

            if not isinstance(header, dict) or not isinstance(header.get("files"), dict):
                raise ArchiveIOError("parse header", self.path, "missing 'files' key")

            self._header = header
            self._header_string = header_string
            self._data_offset = data_offset

        return self._header

    def raw_header(self) -> str:
        self._load()
        return self._header_string

    def list_package(self) -> List[str]:
        """List every entry, directories included, as '/'-prefixed paths"""
        paths: List[str] = []

        def walk(node: Dict, prefix: str) -> None:
            for name in sorted(node["files"]):
                child = node["files"][name]
                child_path = f"{prefix}/{name}"
                paths.append(child_path)
                if "files" in child:
                    walk(child, child_path)

        walk(self._load(), "")
        return paths

    def _resolve(
        self, path: str, follow_links: bool = True, depth: int = 0
    ) -> Tuple[str, Dict]:
        """Find the header node for path, returning its resolved path too"""
        if depth > MAX_LINK_DEPTH:
            raise ArchiveIOError(
                "stat", f"{self.path}:{path}", "too many levels of symbolic links"
            )

        node = self._load()
        resolved: List[str] = []
        parts = [part for part in to_relative_path(path).split("/") if part]

        for part in parts:
            if "link" in node:
                link_path, node = self._resolve(node["link"], True, depth + 1)
                resolved = [p for p in link_path.split("/") if p]

            files = node.get("files")
            if not isinstance(files, dict) or part not in files:
                raise ArchiveIOError("stat", f"{self.path}:{path}", "no such entry")

            node = files[part]
            resolved.append(part)

        if follow_links and "link" in node:
            return self._resolve(node["link"], True, depth + 1)

        return "/".join(resolved), node

    def stat_file(self, path: str) -> Dict:
        """Header metadata for path, following links"""
        return self._resolve(path)[1]

    def is_directory(self, path: str) -> bool:
        return "files" in self.stat_file(path)

    def _read_entry(self, path: str, limit: Optional[int] = None) -> bytes:
        resolved, node = self._resolve(path)
        if "files" in node:
            raise ArchiveIOError("extract", f"{self.path}:{path}", "is a directory")

        size = int(node.get("size", 0))
        if limit is not None:
            size = min(size, limit)

        try:
            if node.get("unpacked"):
                with open(self.unpacked_dir / resolved, "rb") as f:
                    data = f.read(size)
            else:
                with open(self.path, "rb") as f:
                    f.seek(self._data_offset + int(node["offset"]))
                    data = f.read(size)
        except OSError as e:
            raise ArchiveIOError("extract", f"{self.path}:{path}", e) from e

        if len(data) != size:
            raise ArchiveIOError("extract", f"{self.path}:{path}", "truncated payload")

        return data

    def extract_file(self, path: str) -> bytes:
        """Full content of a file entry"""
        return self._read_entry(path)

    def read_head(self, path: str, length: int) -> bytes:
        """First length bytes of a file entry (fewer if the file is shorter)"""
        return self._read_entry(path, limit=length)

    def _write_entry(self, relative: str, node: Dict, target: Path) -> None:
        if node.get("unpacked"):
            shutil.copyfile(self.unpacked_dir / relative, target)
            return

        remaining = int(node.get("size", 0))
        with open(self.path, "rb") as src, open(target, "wb") as dst:
            src.seek(self._data_offset + int(node["offset"]))
            while remaining:
                chunk = src.read(min(COPY_BUFFER_SIZE, remaining))
                if not chunk:
                    raise ArchiveIOError(
                        "extract", f"{self.path}:{relative}", "truncated payload"
                    )
                dst.write(chunk)
                remaining -= len(chunk)

    def extract_all(self, destination: PathLike) -> None:
        """Materialize every entry of the archive below destination"""
        destination = Path(destination)
        try:
            destination.mkdir(parents=True, exist_ok=True)

            for listed in self.list_package():
                relative = to_relative_path(listed)
                _, node = self._resolve(relative, follow_links=False)
                target = _sanitize_path(destination, relative)

                if "files" in node:
                    target.mkdir(parents=True, exist_ok=True)
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)

                if "link" in node:
                    link_target = _sanitize_path(destination, node["link"])
                    if target.is_symlink() or target.exists():
                        target.unlink()
                    os.symlink(os.path.relpath(link_target, target.parent), target)
                    continue

                self._write_entry(relative, node, target)
                if node.get("executable"):
                    target.chmod(target.stat().st_mode | 0o111)
        except OSError as e:
            raise ArchiveIOError("extract", self.path, e) from e

    @classmethod
    def pack(
        cls,
        source_dir: PathLike,
        output_path: PathLike,
        unpack: Optional[Iterable[str]] = None,
    ) -> None:
        """Pack source_dir into an asar archive at output_path.

        Paths in unpack (relative to source_dir) are stored beside the archive
        in '<output>.unpacked' instead of being embedded. The archive is written
        to a temporary file first and moved into place once complete.
        """
        root = Path(os.path.realpath(source_dir))
        output_path = Path(output_path)
        unpack_set = {to_relative_path(p) for p in (unpack or ())}

        header: Dict[str, Any] = {"files": {}}
        packed: List[Path] = []
        unpacked: List[Tuple[Path, str]] = []
        offset = 0

        def walk(directory: Path, files: Dict, prefix: str) -> None:
            nonlocal offset
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)

            for entry in entries:
                relative = f"{prefix}{entry.name}"

                if entry.is_symlink():
                    real = os.path.realpath(entry.path)
                    link = os.path.relpath(real, root)
                    if link == os.pardir or link.startswith(os.pardir + os.sep):
                        raise ArchiveIOError(
                            "pack", entry.path, f"links out of the package to {real}"
                        )
                    files[entry.name] = {"link": link.replace(os.sep, "/")}
                elif entry.is_dir():
                    node = {"files": {}}
                    files[entry.name] = node
                    walk(Path(entry.path), node["files"], relative + "/")
                else:
                    file_stat = entry.stat()
                    node = {"size": file_stat.st_size}
                    if relative in unpack_set:
                        node["unpacked"] = True
                        unpacked.append((Path(entry.path), relative))
                    else:
                        node["offset"] = str(offset)
                        offset += file_stat.st_size
                        packed.append(Path(entry.path))
                    if os.name != "nt" and file_stat.st_mode & stat.S_IXUSR:
                        node["executable"] = True
                    node["integrity"] = _file_integrity(Path(entry.path))
                    files[entry.name] = node

        temp_name = None
        staged_unpacked = None
        try:
            walk(root, header["files"], "")
            header_bytes = _encode_header(header)

            output_path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=output_path.parent,
                prefix=f".{output_path.name}.",
                suffix=".tmp",
                delete=False,
            ) as out:
                temp_name = out.name
                out.write(header_bytes)
                for file_path in packed:
                    with open(file_path, "rb") as src:
                        shutil.copyfileobj(src, out, COPY_BUFFER_SIZE)

            if unpacked:
                staged_unpacked = tempfile.mkdtemp(
                    dir=output_path.parent,
                    prefix=f".{output_path.name}{UNPACKED_SUFFIX}.",
                )
                for file_path, relative in unpacked:
                    destination = Path(staged_unpacked) / relative
                    destination.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(file_path, destination)

            # Stale unpacked files from an earlier pack must not survive
            unpacked_root = Path(str(output_path) + UNPACKED_SUFFIX)
            if unpacked_root.is_dir() and not unpacked_root.is_symlink():
                shutil.rmtree(unpacked_root)
            elif unpacked_root.exists() or unpacked_root.is_symlink():
                unpacked_root.unlink()
            if staged_unpacked:
                os.replace(staged_unpacked, unpacked_root)
                staged_unpacked = None

            os.replace(temp_name, output_path)
            temp_name = None
        except OSError as e:
            raise ArchiveIOError("pack", output_path, e) from e
        finally:
            if temp_name and os.path.exists(temp_name):
                os.unlink(temp_name)
            if staged_unpacked and os.path.isdir(staged_unpacked):
                shutil.rmtree(staged_unpacked, ignore_errors=True)


def detect_asar_mode(app_path: PathLike) -> AsarMode:
    """Check whether an app bundle contains Contents/Resources/app.asar"""
    logger.debug(f"checking asar mode of {app_path}")
    asar_path = Path(app_path).joinpath(*APP_ASAR_LOCATION)

    if not asar_path.exists():
        logger.debug("determined no asar")
        return AsarMode.NO_ASAR

    logger.debug("determined has asar")
    return AsarMode.HAS_ASAR


def generate_asar_integrity(asar_path: PathLike) -> AsarIntegrity:
    """SHA256 of the archive's raw header string"""
    header_string, _ = read_raw_header(asar_path)
    return AsarIntegrity(
        algorithm="SHA256",
        hash=hashlib.sha256(header_string.encode("utf-8")).hexdigest(),
    )


def build_manifest(archive: AsarArchive) -> Dict[str, ArchiveEntry]:
    """Index every entry of an archive by its relative path"""
    manifest: Dict[str, ArchiveEntry] = {}
    for listed in archive.list_package():
        path = to_relative_path(listed)
        node = archive.stat_file(path)
        kind = EntryKind.DIRECTORY if "files" in node else EntryKind.FILE
        manifest[path] = ArchiveEntry(path, kind, bool(node.get("unpacked", False)))
    return manifest


def collect_unpacked(*manifests: Dict[str, ArchiveEntry]) -> Set[str]:
    """Union of unpacked file paths across manifests"""
    unpacked: Set[str] = set()
    for manifest in manifests:
        for entry in manifest.values():
            if entry.unpacked and not entry.is_directory:
                unpacked.add(entry.path)
    return unpacked


def reconcile_manifests(
    x64_archive: AsarArchive,
    x64_manifest: Dict[str, ArchiveEntry],
    arm64_archive: AsarArchive,
    arm64_manifest: Dict[str, ArchiveEntry],
) -> ReconciliationResult:
    """Partition both manifests into unique, identical and divergent paths.

    Shared files are compared byte for byte; shared directories carry no
    content and are kept apart in common_directories.
    """
    x64_paths = set(x64_manifest)
    arm64_paths = set(arm64_manifest)

    result = ReconciliationResult(
        unique_to_x64=x64_paths - arm64_paths,
        unique_to_arm64=arm64_paths - x64_paths,
    )

    for path in sorted(x64_paths & arm64_paths):
        x64_entry = x64_manifest[path]
        arm64_entry = arm64_manifest[path]

        if x64_entry.is_directory != arm64_entry.is_directory:
            raise EntryKindMismatchError(path)

        if x64_entry.is_directory:
            result.common_directories.add(path)
            continue

        if x64_archive.extract_file(path) == arm64_archive.extract_file(path):
            result.identical_common.add(path)
        else:
            result.divergent_common.add(path)

    return result


def _expand_braces(pattern: str) -> List[str]:
    """Expand the first {a,b} group recursively"""
    match = re.search(r"\{([^{}]*)\}", pattern)
    if not match:
        return [pattern]

    expanded: List[str] = []
    for option in match.group(1).split(","):
        expanded.extend(
            _expand_braces(pattern[: match.start()] + option + pattern[match.end() :])
        )
    return expanded


def _glob_to_regex(pattern: str) -> str:
    """Translate a glob into a regex where * and ? stop at '/' and ** does not"""
    parts: List[str] = []
    i, n = 0, len(pattern)

    while i < n:
        char = pattern[i]
        if char == "*":
            if pattern.startswith("**", i):
                i += 2
                # **/ means "zero or more directories"
                if i < n and pattern[i] == "/":
                    parts.append("(?:.*/)?")
                    i += 1
                else:
                    parts.append(".*")
                continue
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape(char))
            else:
                body = pattern[i + 1 : end].replace("\\", "\\\\")
                if body.startswith("!"):
                    body = "^" + body[1:]
                parts.append(f"[{body}]")
                i = end + 1
                continue
        else:
            parts.append(re.escape(char))
        i += 1

    return "".join(parts)


def matches_allow_pattern(path: str, pattern: Optional[str]) -> bool:
    """Glob match with base-name fallback for patterns without a '/'"""
    if not pattern:
        return False

    for candidate in _expand_braces(pattern):
        try:
            regex = re.compile(_glob_to_regex(candidate))
        except re.error:
            logger.warning(f"Invalid pattern: {candidate}")
            continue

        if regex.fullmatch(path):
            return True
        if "/" not in candidate and regex.fullmatch(posixpath.basename(path)):
            return True

    return False


def check_single_arch_file(
    archive: PathLike, path: str, pattern: Optional[str]
) -> None:
    """Raise UnmatchedUniqueFileError unless the allow pattern covers path"""
    if pattern is None or not matches_allow_pattern(path, pattern):
        raise UnmatchedUniqueFileError(archive, path, pattern)


def is_mach_o(head: bytes) -> bool:
    if len(head) < 4:
        return False
    return struct.unpack_from("<I", head)[0] in MACHO_MAGIC


def validate_divergent_binaries(
    x64_archive: AsarArchive, arm64_archive: AsarArchive, paths: Iterable[str]
) -> None:
    """Only Mach-O files may differ between the two builds"""
    for path in sorted(paths):
        if not is_mach_o(x64_archive.read_head(path, 4)):
            raise NonBinaryDivergenceError(path)
        if not is_mach_o(arm64_archive.read_head(path, 4)):
            raise NonBinaryDivergenceError(path)


class BinaryMerger:
    """Combines two single-architecture binaries into one universal binary.

    The output path is also one of the inputs: the merged binary overwrites
    it in place.
    """

    async def merge(self, first: Path, second: Path, output: Path) -> None:
        raise NotImplementedError


class LipoMerger(BinaryMerger):
    """Runs `lipo FIRST SECOND -create -output OUTPUT`"""

    def __init__(self, lipo_path: str = LIPO):
        self.lipo_path = lipo_path

    async def merge(self, first: Path, second: Path, output: Path) -> None:
        command = [
            self.lipo_path,
            str(first),
            str(second),
            "-create",
            "-output",
            str(output),
        ]
        try:
            result = await run_in_thread(
                subprocess.run, command, capture_output=True, text=True
            )
        except FileNotFoundError:
            raise BinaryMergeError(
                str(output), None, f"{self.lipo_path} command not found"
            )

        if result.returncode != 0:
            raise BinaryMergeError(str(output), result.returncode, result.stderr)


class Workspace:
    """Two scratch directories, one per architecture, for a single merge.

    Use as an async context manager; both directories are removed on exit
    whether the body succeeded or raised.
    """

    def __init__(self, temp_root: Optional[PathLike] = None):
        self.temp_root = str(temp_root) if temp_root else None
        self.x64_dir: Optional[Path] = None
        self.arm64_dir: Optional[Path] = None
        self._released = False

    @property
    def directories(self) -> List[Path]:
        return [d for d in (self.x64_dir, self.arm64_dir) if d is not None]

    async def _make_dir(self, prefix: str) -> Path:
        try:
            return Path(
                await run_in_thread(tempfile.mkdtemp, prefix=prefix, dir=self.temp_root)
            )
        except OSError as e:
            raise ArchiveIOError(
                "create workspace", self.temp_root or tempfile.gettempdir(), e
            ) from e

    async def __aenter__(self) -> "Workspace":
        self.x64_dir = await self._make_dir("x64-")
        try:
            self.arm64_dir = await self._make_dir("arm64-")
        except BaseException:
            await self.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        failures = await self.release()
        if not failures:
            return False

        cleanup_error = WorkspaceCleanupError(failures)
        if exc is None:
            raise cleanup_error

        logger.error(f"{cleanup_error} (while handling {exc_type.__name__}: {exc})")
        try:
            exc.cleanup_error = cleanup_error
        except AttributeError:
            pass
        return False

    async def extract(self, archive: AsarArchive, directory: Path) -> None:
        await run_in_thread(archive.extract_all, directory)

    async def release(self) -> List[Tuple[Path, OSError]]:
        """Remove both directories once; one failing does not stop the other"""
        if self._released:
            return []
        self._released = True

        failures: List[Tuple[Path, OSError]] = []
        for directory in self.directories:
            try:
                await run_in_thread(shutil.rmtree, directory)
            except FileNotFoundError:
                continue
            except OSError as e:
                failures.append((directory, e))
        return failures


class UniversalAsar:
    """Merges per-architecture asar archives into one universal archive"""

    def __init__(
        self, config: Optional[Dict] = None, merger: Optional[BinaryMerger] = None
    ):
        self.config = config or {}

        self.console = Console() if HAS_RICH else None

        self.logger = self._setup_logging()

        self.verbose = self.config.get("verbose", False)
        self.lipo_path = self.config.get("lipo_path", LIPO)
        self.temp_dir = self.config.get("temp_dir") or None
        self.single_arch_files = self.config.get("single_arch_files") or None
        self.progress = self.config.get("progress", True)

        self.merger = merger or LipoMerger(self.lipo_path)

        # TTY detection for progress bars (disable in non-interactive terminals like CI/CD)
        self.is_tty = sys.stdout.isatty()

        self.stats = {
            "unique_entries_copied": 0,
            "identical_files": 0,
            "binaries_merged": 0,
            "unpacked_files": 0,
        }

    def _setup_logging(self) -> logging.Logger:
        """Setup structured logging"""
        level = logging.DEBUG if self.config.get("verbose") else logging.INFO

        logger.setLevel(level)

        # Avoid duplicate handlers
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                "%(asctime)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger

    def _iter_with_progress(
        self, items: Sequence[str], description: str, enabled: bool
    ) -> Iterator[str]:
        """Yield items, showing a rich or tqdm progress bar when possible"""
        if not (enabled and self.is_tty and items):
            yield from items
            return

        if HAS_RICH and self.console:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self.console,
                transient=True,
            ) as progress:
                task = progress.add_task(description, total=len(items))
                for item in items:
                    yield item
                    progress.advance(task)
        elif HAS_TQDM and tqdm:
            yield from tqdm(items, desc=description, unit="files")
        else:
            yield from items

    def plan_merge(
        self,
        x64_archive: AsarArchive,
        arm64_archive: AsarArchive,
        single_arch_files: Optional[str],
    ) -> MergePlan:
        """Index, reconcile and validate both archives without touching disk"""
        x64_manifest = build_manifest(x64_archive)
        arm64_manifest = build_manifest(arm64_archive)
        unpacked = collect_unpacked(x64_manifest, arm64_manifest)

        result = reconcile_manifests(
            x64_archive, x64_manifest, arm64_archive, arm64_manifest
        )

        for path in sorted(result.unique_to_x64):
            check_single_arch_file(x64_archive.path, path, single_arch_files)
        for path in sorted(result.unique_to_arm64):
            check_single_arch_file(arm64_archive.path, path, single_arch_files)

        validate_divergent_binaries(x64_archive, arm64_archive, result.divergent_common)

        return MergePlan(x64_manifest, arm64_manifest, result, unpacked)

    def _copy_file(self, relative: str, source: Path, destination: Path) -> None:
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination, follow_symlinks=False)
        except OSError as e:
            raise ArchiveIOError("copy", relative, e) from e

    def _make_dir(self, relative: str, destination: Path) -> None:
        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArchiveIOError("mkdir", relative, e) from e

    async def _copy_unique_entries(self, plan: MergePlan, workspace: Workspace) -> None:
        for path in sorted(plan.reconciliation.unique_to_arm64):
            source = workspace.arm64_dir / path
            destination = workspace.x64_dir / path

            if plan.arm64_manifest[path].is_directory:
                self.logger.debug(f"creating unique directory: {path}")
                await run_in_thread(self._make_dir, path, destination)
            else:
                self.logger.debug(f"copying unique file: {path}")
                await run_in_thread(self._copy_file, path, source, destination)

            self.stats["unique_entries_copied"] += 1

    async def _merge_bindings(
        self, plan: MergePlan, workspace: Workspace, progress: bool
    ) -> None:
        bindings = sorted(plan.reconciliation.divergent_common)
        merged: Set[Path] = set()
        for binding in self._iter_with_progress(bindings, "Merging binaries", progress):
            source = Path(
                await run_in_thread(os.path.realpath, workspace.arm64_dir / binding)
            )
            destination = Path(
                await run_in_thread(os.path.realpath, workspace.x64_dir / binding)
            )

            # Links and their targets resolve to the same file; lipo it once
            if destination in merged:
                self.logger.debug(f"skipping already merged binding: {binding}")
                continue
            merged.add(destination)

            self.logger.debug(f"merging binding: {binding}")
            try:
                await self.merger.merge(source, destination, destination)
            except BinaryMergeError as e:
                raise BinaryMergeError(binding, e.exit_status, e.stderr) from e

            self.stats["binaries_merged"] += 1

    async def merge_asars(
        self,
        x64_asar_path: PathLike,
        arm64_asar_path: PathLike,
        output_asar_path: PathLike,
        single_arch_files: Optional[str] = None,
        progress: Optional[bool] = None,
    ) -> ReconciliationResult:
        """Merge the x64 and arm64 archives into output_asar_path.

        Args:
            x64_asar_path: Archive built for x64
            arm64_asar_path: Archive built for arm64
            output_asar_path: Where the universal archive is written
            single_arch_files: Glob allowing entries present in only one archive;
                falls back to the configured pattern when omitted
            progress: Show a progress bar while merging binaries

        Returns:
            The reconciliation of both manifests

        Raises:
            UniversalAsarError: Any failure; no output archive is written
        """
        x64_archive = AsarArchive(x64_asar_path)
        arm64_archive = AsarArchive(arm64_asar_path)
        output_asar_path = Path(output_asar_path)

        if single_arch_files is None:
            single_arch_files = self.single_arch_files
        if progress is None:
            progress = self.progress

        self.logger.debug(f"merging {x64_archive.path} and {arm64_archive.path}")

        self.stats = {
            "unique_entries_copied": 0,
            "identical_files": 0,
            "binaries_merged": 0,
            "unpacked_files": 0,
        }

        plan = await run_in_thread(
            self.plan_merge, x64_archive, arm64_archive, single_arch_files
        )
        result = plan.reconciliation
        self.stats["identical_files"] = len(result.identical_common)
        self.stats["unpacked_files"] = len(plan.unpacked)

        async with Workspace(self.temp_dir) as workspace:
            self.logger.debug(f"extracting {x64_archive.path} to {workspace.x64_dir}")
            await workspace.extract(x64_archive, workspace.x64_dir)

            self.logger.debug(
                f"extracting {arm64_archive.path} to {workspace.arm64_dir}"
            )
            await workspace.extract(arm64_archive, workspace.arm64_dir)

            await self._copy_unique_entries(plan, workspace)
            await self._merge_bindings(plan, workspace, progress)

            self.logger.debug(f"creating archive at {output_asar_path}")
            await run_in_thread(
                AsarArchive.pack, workspace.x64_dir, output_asar_path, plan.unpacked
            )

        self.logger.debug("done merging")
        self.logger.info(
            f"Merged {self.stats['binaries_merged']} binaries, copied "
            f"{self.stats['unique_entries_copied']} arm64-only entries, "
            f"{self.stats['identical_files']} identical files, "
            f"{self.stats['unpacked_files']} unpacked"
        )
        return result


def create_config_file(config_path: Path) -> bool:
    """Create a default configuration file"""
    default_config = """# Universal ASAR Configuration
# Uncomment and modify values as needed

# Glob for files allowed to exist in only one architecture's archive
# (matched against the base name when it contains no '/')
# single_arch_files = "*.node"

# Binary merge tool
# lipo_path = "lipo"

# Root directory for temporary extraction workspaces
# temp_dir = "/tmp"

# Feature flags
# progress = true
# verbose = false
"""

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            f.write(default_config)
        return True
    except (OSError, PermissionError) as e:
        print(f"Error creating config file: {e}")
        return False


def load_config_file(config_path: Path) -> Dict:
    """Load configuration from file with error handling"""
    if not config_path.exists():
        return {}

    config = {}
    line_num = 0
    try:
        with open(config_path, "r") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                if "=" in line:
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip().strip("\"'")

                    # Parse different value types
                    if value.lower() in ("true", "false"):
                        config[key] = value.lower() == "true"
                    elif value.isdigit():
                        config[key] = int(value)
                    elif value.startswith("[") and value.endswith("]"):
                        items = [
                            item.strip().strip("\"'") for item in value[1:-1].split(",")
                        ]
                        config[key] = [item for item in items if item]
                    else:
                        config[key] = value

    except Exception as e:
        print(f"Warning: Error loading config file on line {line_num}: {e}")

    return config


OPERATIONS = {
    "merge": ("X64_ASAR", "ARM64_ASAR", "OUTPUT_ASAR"),
    "detect": ("APP_BUNDLE",),
    "integrity": ("ASAR",),
    "list": ("ASAR",),
}


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with comprehensive error handling"""
    parser = argparse.ArgumentParser(
        description="Merge x64 and arm64 Electron asar archives into a universal archive",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Merge two archives, allowing native addons to exist in one build only
  %(prog)s merge x64/app.asar arm64/app.asar universal/app.asar -a "*.node"

  # Use a specific lipo and workspace root
  %(prog)s merge x64.asar arm64.asar out.asar --lipo /usr/bin/lipo --temp-dir /var/tmp

  # Check whether an app bundle uses asar
  %(prog)s detect MyApp.app

  # Print the header integrity used by ElectronAsarIntegrity
  %(prog)s integrity universal/app.asar

  # Show every entry of an archive
  %(prog)s list app.asar
        """,
    )

    parser.add_argument(
        "operation",
        nargs="?",
        help="Operation to perform (merge, detect, integrity or list)",
    )
    parser.add_argument("paths", nargs="*", help="Operation arguments")

    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument(
        "-f", "--force", action="store_true", help="Overwrite existing output archive"
    )
    parser.add_argument(
        "-a",
        "--single-arch-files",
        default=None,
        help="Glob for entries allowed to exist in only one archive "
        "(matched against the base name when it contains no '/')",
    )
    parser.add_argument("--lipo", default=None, help="Path to the lipo binary")
    parser.add_argument(
        "--temp-dir", default=None, help="Root directory for extraction workspaces"
    )
    parser.add_argument(
        "--no-progress", action="store_true", help="Disable progress bars"
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path.home() / ".config" / "universal-asar" / "config",
        help="Configuration file path",
    )
    parser.add_argument(
        "--create-config", action="store_true", help="Create default config"
    )

    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    args = parser.parse_args(argv)

    if args.create_config:
        if create_config_file(args.config):
            print(f"Created default configuration file: {args.config}")
            return 0
        print(f"Failed to create configuration file: {args.config}")
        return 1

    if not args.operation:
        parser.error("operation is required")

    # Fuzzy command matching for typos
    if args.operation not in OPERATIONS:
        close_matches = difflib.get_close_matches(
            args.operation, list(OPERATIONS), n=1, cutoff=0.6
        )
        if close_matches:
            print(
                f"Unknown command '{args.operation}'. Did you mean '{close_matches[0]}'?",
                file=sys.stderr,
            )
        else:
            print(
                f"Unknown command '{args.operation}'. Valid commands: {', '.join(OPERATIONS)}",
                file=sys.stderr,
            )
        return 1

    expected = OPERATIONS[args.operation]
    if len(args.paths) != len(expected):
        print(
            f"Usage: universal-asar {args.operation} {' '.join(expected)}",
            file=sys.stderr,
        )
        return 1

    try:
        config = load_config_file(args.config)

        # Command line arguments override the config file
        if args.single_arch_files is not None:
            config["single_arch_files"] = args.single_arch_files
        if args.lipo is not None:
            config["lipo_path"] = args.lipo
        if args.temp_dir is not None:
            config["temp_dir"] = args.temp_dir
        if args.no_progress:
            config["progress"] = False
        config["verbose"] = args.verbose or config.get("verbose", False)

        if args.operation == "detect":
            mode = detect_asar_mode(args.paths[0])
            print(mode.name)
            return 0

        if args.operation == "integrity":
            integrity = generate_asar_integrity(args.paths[0])
            print(json.dumps(integrity.to_dict()))
            return 0

        if args.operation == "list":
            manifest = build_manifest(AsarArchive(args.paths[0]))
            for entry in manifest.values():
                flags = "d" if entry.is_directory else "-"
                flags += "u" if entry.unpacked else "-"
                print(f"{flags} {entry.path}")
            return 0

        x64_path, arm64_path, output_path = (Path(p) for p in args.paths)
        if output_path.exists() and not args.force:
            print(
                f"Output archive already exists: {output_path} (use --force to overwrite)",
                file=sys.stderr,
            )
            return 1

        merger = UniversalAsar(config)
        await merger.merge_asars(x64_path, arm64_path, output_path)
        return 0

    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130
    except UniversalAsarError as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return 1


def cli_main():
    """Synchronous entry point for console scripts"""
    return asyncio.run(main())


if __name__ == "__main__":
    sys.exit(cli_main())
