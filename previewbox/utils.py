"""
Utility functions for file trees, archives, and sandbox naming.
"""

import io
import os
import random
import re
import socket
import tarfile
import time
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, Optional

from previewbox.schemas import DirectoryEntry, FileEntry, FileNode, FileTree

# OS metadata files that never enter a sandbox
SKIPPED_FILE_NAMES = {".DS_Store"}

_PROJECT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def validate_project_id(project_id: str) -> str:
    """
    Check that a project id is safe to use as a directory name.

    Raises:
        ValueError: If the id is empty, contains separators, or is "." / ".."
    """
    if not project_id or not _PROJECT_ID_PATTERN.match(project_id) or project_id in (".", ".."):
        raise ValueError(f"Invalid project id: {project_id!r}")
    return project_id


def safe_container_name(user_name: Optional[str], user_id: str) -> str:
    """
    Build a deterministic container name for a user.

    Args:
        user_name: Display name, may be empty
        user_id: Opaque user identifier

    Returns:
        A name like "previewbox-user-jane_doe-42"
    """
    name = (user_name or "user").strip()
    name = re.sub(r"[^a-zA-Z0-9_.-]", "_", name).lower()
    name = name.strip("_.-") or "user"
    safe_id = re.sub(r"[^a-zA-Z0-9_.-]", "_", user_id)
    return f"previewbox-user-{name[:40]}-{safe_id}"


def normalize_relative_path(path: str) -> str:
    """
    Normalize a sandbox path to POSIX form relative to the project root.

    Raises:
        ValueError: If the path escapes the project root
    """
    pure = PurePosixPath(path.replace("\\", "/").lstrip("/"))
    parts = []
    for part in pure.parts:
        if part in ("", "."):
            continue
        if part == "..":
            if not parts:
                raise ValueError(f"Path escapes sandbox: {path}")
            parts.pop()
            continue
        parts.append(part)
    if not parts:
        raise ValueError(f"Empty sandbox path: {path!r}")
    return "/".join(parts)


def resolve_within(root: Path, path: str) -> Path:
    """Resolve a relative sandbox path under a host directory."""
    return root / normalize_relative_path(path)


def iter_file_paths(tree: FileTree, prefix: str = "") -> Iterator[str]:
    """Yield the relative path of every file in a tree."""
    for name, node in tree.items():
        path = prefix + name
        if isinstance(node, FileEntry):
            yield path
        elif isinstance(node, DirectoryEntry):
            yield from iter_file_paths(node.children, path + "/")
        else:
            raise TypeError(f"Unknown file node at {path}: {node!r}")


def file_tree_for_path(path: str, node: FileNode) -> FileTree:
    """
    Wrap a single node in the directories leading to it.

    "src/app/main.ts" becomes {"src": {"app": {"main.ts": node}}}.
    """
    parts = normalize_relative_path(path).split("/")
    tree: FileTree = {parts[-1]: node}
    for part in reversed(parts[:-1]):
        tree = {part: DirectoryEntry(children=tree)}
    return tree


def make_tar_bytes(tree: FileTree, uid: Optional[int] = None, gid: Optional[int] = None) -> bytes:
    """
    Pack a file tree into an in-memory tar archive.

    Args:
        tree: Files and directories to pack
        uid: Owner recorded on every entry (keeps bind mounts writable)
        gid: Group recorded on every entry

    Returns:
        Bytes of the tar archive
    """
    buffer = io.BytesIO()
    mtime = int(time.time())

    with tarfile.open(fileobj=buffer, mode="w") as tar:
        _add_tree_to_tar(tar, tree, "", mtime, uid, gid)

    return buffer.getvalue()


def _add_tree_to_tar(
    tar: tarfile.TarFile,
    tree: FileTree,
    prefix: str,
    mtime: int,
    uid: Optional[int],
    gid: Optional[int],
) -> None:
    for name, node in tree.items():
        if name in SKIPPED_FILE_NAMES:
            continue
        path = normalize_relative_path(prefix + name)
        info = tarfile.TarInfo(name=path)
        info.mtime = mtime
        if uid is not None:
            info.uid = uid
        if gid is not None:
            info.gid = gid

        if isinstance(node, FileEntry):
            data = node.data()
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
        elif isinstance(node, DirectoryEntry):
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
            _add_tree_to_tar(tar, node.children, path + "/", mtime, uid, gid)
        else:
            raise TypeError(f"Unknown file node at {path}: {node!r}")


def write_tree_to_dir(tree: FileTree, root: Path) -> None:
    """Write a file tree under a host directory (blocking operation)."""
    for name, node in tree.items():
        if name in SKIPPED_FILE_NAMES:
            continue
        target = resolve_within(root, name)
        if isinstance(node, FileEntry):
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(node.data())
        elif isinstance(node, DirectoryEntry):
            target.mkdir(parents=True, exist_ok=True)
            write_tree_to_dir(node.children, target)
        else:
            raise TypeError(f"Unknown file node at {target}: {node!r}")


def host_owner() -> tuple:
    """(uid, gid) of this process, or (None, None) where the OS has none."""
    if hasattr(os, "getuid") and hasattr(os, "getgid"):
        return os.getuid(), os.getgid()
    return None, None


def is_port_free(port: int, host: str = "localhost") -> bool:
    """Check if a port is free on the system."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return True
        except OSError:
            return False


def allocate_port(start: int, end: int, exclude: Iterable[int] = ()) -> Optional[int]:
    """
    Pick a random free host port from [start, end).

    Args:
        start: First port of the range
        end: End of the range (exclusive)
        exclude: Ports that must not be returned (already tried or in use)

    Returns:
        Available port number, or None if every port is taken
    """
    excluded = set(exclude)
    candidates = [port for port in range(start, end) if port not in excluded]
    random.shuffle(candidates)

    for port in candidates:
        if is_port_free(port):
            return port

    return None
