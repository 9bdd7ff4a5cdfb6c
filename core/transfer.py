"""hotdeploy: File transfer primitives

Client side:
- collect_files(): walk a build output into wire entries (forward-slash
  relative paths, base64 content), skipping ignored segments.
- replace_tree(): local remove-then-copy into the managed root.

Host side:
- ManagedRoot: sandboxed removeDir / writeFiles under the managed root.
  Every path is resolved with realpath and must stay strictly inside the
  root; writes are atomic (temp file + os.replace).
"""

from __future__ import annotations
import base64
import binascii
import logging
import os
import shutil
import tempfile
from typing import Dict, Iterable, List

from core.errors import SandboxViolation, safe_text

logger = logging.getLogger("hotdeploy.transfer")

# Dot-prefixed names are always skipped as well.
IGNORED_SEGMENTS = frozenset({"node_modules", "__pycache__", "venv"})
MAX_TRANSFER_FILES = 10000
MAX_TRANSFER_BYTES = 48 * 1024 * 1024


def is_ignored_segment(segment: str) -> bool:
    return segment in IGNORED_SEGMENTS or segment.startswith(".")


def _ignore_for_copytree(directory: str, names: List[str]) -> List[str]:
    return [name for name in names if is_ignored_segment(name)]


def collect_files(source_dir: str) -> List[Dict[str, str]]:
    """Return [{path, content}] for every file under source_dir."""
    entries = []
    total = 0
    for dirpath, dirnames, filenames in os.walk(source_dir):
        dirnames[:] = sorted(d for d in dirnames if not is_ignored_segment(d))
        for filename in sorted(filenames):
            if is_ignored_segment(filename):
                continue
            full = os.path.join(dirpath, filename)
            if not os.path.isfile(full):
                continue
            rel = os.path.relpath(full, source_dir).replace(os.sep, "/")
            with open(full, "rb") as f:
                data = f.read()
            total += len(data)
            if total > MAX_TRANSFER_BYTES:
                raise ValueError(
                    f"build output exceeds {MAX_TRANSFER_BYTES:,} bytes; use a local transfer"
                )
            entries.append({
                "path": rel,
                "content": base64.b64encode(data).decode("ascii"),
                "encoding": "base64",
            })
            if len(entries) > MAX_TRANSFER_FILES:
                raise ValueError(f"build output has more than {MAX_TRANSFER_FILES} files")
    return entries


def prefix_entries(entries: Iterable[Dict[str, str]], prefix: str) -> List[Dict[str, str]]:
    """Re-root wire entries under prefix (a forward-slash relative dir)."""
    prefix = prefix.strip("/")
    return [dict(entry, path=f"{prefix}/{entry['path']}") for entry in entries]


def replace_tree(source_dir: str, dest_dir: str) -> int:
    """Remove dest_dir, then copy source_dir into it. Returns files copied."""
    if os.path.isdir(dest_dir) and not os.path.islink(dest_dir):
        shutil.rmtree(dest_dir)
    elif os.path.lexists(dest_dir):
        os.unlink(dest_dir)
    os.makedirs(os.path.dirname(dest_dir) or ".", exist_ok=True)
    shutil.copytree(source_dir, dest_dir, ignore=_ignore_for_copytree)
    count = sum(len(files) for _, _, files in os.walk(dest_dir))
    logger.debug("Copied %d files %s -> %s", count, source_dir, dest_dir)
    return count


class ManagedRoot:
    """Host-side file operations confined to the managed root."""

    def __init__(self, root: str):
        self.root = os.path.realpath(root)

    def resolve(self, rel_path: str) -> str:
        """Resolve a relative path strictly inside the root (never the root itself)."""
        if not isinstance(rel_path, str) or not rel_path.strip():
            raise SandboxViolation("path must be a non-empty string")
        if "\x00" in rel_path:
            raise SandboxViolation("path contains NUL byte")
        native = rel_path.replace("/", os.sep)
        drive, _ = os.path.splitdrive(native)
        if drive or os.path.isabs(native):
            raise SandboxViolation("absolute paths are not allowed")
        resolved = os.path.realpath(os.path.join(self.root, native))
        root_norm = os.path.normcase(self.root)
        if not os.path.normcase(resolved).startswith(root_norm + os.sep):
            logger.warning("Managed root escape attempt: %r", safe_text(rel_path))
            raise SandboxViolation("path is outside the managed root")
        return resolved

    def remove_dir(self, rel_path: str) -> bool:
        """Delete a directory under the root. False if it did not exist."""
        target = self.resolve(rel_path)
        if not os.path.lexists(target):
            return False
        if os.path.isdir(target) and not os.path.islink(target):
            shutil.rmtree(target)
        else:
            os.unlink(target)
        logger.info("removeDir: %s", target)
        return True

    def write_files(self, entries: List[Dict[str, str]]) -> int:
        """Write wire entries atomically. Returns the number written.

        All paths are validated and decoded before anything is written, so a
        bad entry leaves the tree untouched.
        """
        if len(entries) > MAX_TRANSFER_FILES:
            raise ValueError(f"too many files ({len(entries)} > {MAX_TRANSFER_FILES})")
        staged = []
        for entry in entries:
            target = self.resolve(entry["path"])
            encoding = entry.get("encoding", "base64")
            if encoding == "base64":
                try:
                    data = base64.b64decode(entry["content"], validate=True)
                except (binascii.Error, ValueError):
                    raise ValueError(f"invalid base64 content for {safe_text(entry['path'])}")
            elif encoding == "utf-8":
                data = entry["content"].encode("utf-8")
            else:
                raise ValueError(f"unsupported encoding {safe_text(encoding)!r}")
            staged.append((target, data))

        for target, data in staged:
            parent = os.path.dirname(target)
            os.makedirs(parent, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=".hotdeploy_write_")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                if os.path.islink(target):
                    raise SandboxViolation("refusing to replace a symlink")
                os.replace(tmp_path, target)
            except Exception:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
        if staged:
            logger.info("writeFiles: %d file(s) under %s", len(staged), self.root)
        return len(staged)
