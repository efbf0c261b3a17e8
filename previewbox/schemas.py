"""
Pydantic schemas for sandbox state, file trees, and command results.
"""

import base64
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class SandboxStatus(str, Enum):
    """Lifecycle states of a sandbox."""
    ABSENT = "absent"
    CREATING = "creating"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    RECREATING = "recreating"


# =============================================================================
# FILE TREES
# =============================================================================

class FileEntry(BaseModel):
    """A file in a file tree."""
    kind: Literal["file"] = "file"
    contents: str = Field(..., description="File contents, text or base64")
    encoding: Literal["utf-8", "base64"] = Field("utf-8", description="How contents is encoded")

    def data(self) -> bytes:
        """Decoded file bytes."""
        if self.encoding == "base64":
            return base64.b64decode(self.contents)
        return self.contents.encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "FileEntry":
        """Build an entry, falling back to base64 for non-UTF-8 data."""
        try:
            return cls(contents=data.decode("utf-8"))
        except UnicodeDecodeError:
            return cls(contents=base64.b64encode(data).decode("ascii"), encoding="base64")


class DirectoryEntry(BaseModel):
    """A directory in a file tree."""
    kind: Literal["directory"] = "directory"
    children: Dict[str, "FileNode"] = Field(default_factory=dict, description="Entries by path segment")


FileNode = Annotated[Union[FileEntry, DirectoryEntry], Field(discriminator="kind")]
FileTree = Dict[str, FileNode]

DirectoryEntry.model_rebuild()

_file_tree_adapter = TypeAdapter(FileTree)


def file_tree_from_dict(raw: Dict[str, Any]) -> FileTree:
    """
    Validate a file tree from plain data.

    Accepts both the tagged shape ({"kind": "file", ...}) and the editor's
    wire shape, where each entry is {"file": {"contents", "encoding"?}} or
    {"directory": {...}}.

    Args:
        raw: Mapping of path segment to node data

    Returns:
        Validated FileTree

    Raises:
        pydantic.ValidationError: If a node matches neither shape
    """
    return _file_tree_adapter.validate_python(_normalize_wire_tree(raw))


def _normalize_wire_tree(raw: Dict[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for name, node in raw.items():
        if isinstance(node, (FileEntry, DirectoryEntry)):
            normalized[name] = node
        elif isinstance(node, dict) and "file" in node:
            file_data = node["file"]
            normalized[name] = {
                "kind": "file",
                "contents": file_data.get("contents", ""),
                "encoding": file_data.get("encoding") or "utf-8",
            }
        elif isinstance(node, dict) and "directory" in node:
            normalized[name] = {
                "kind": "directory",
                "children": _normalize_wire_tree(node["directory"]),
            }
        elif isinstance(node, dict) and node.get("kind") == "directory":
            normalized[name] = {
                "kind": "directory",
                "children": _normalize_wire_tree(node.get("children", {})),
            }
        else:
            normalized[name] = node
    return normalized


# =============================================================================
# SANDBOX STATE
# =============================================================================

class SandboxHandle(BaseModel):
    """A live sandbox bound to one (user, project) pair."""
    sandbox_id: str = Field(..., description="Runtime identifier (container id or process root)")
    name: str = Field(..., description="Human-readable sandbox name")
    user_id: str = Field(..., description="Owning caller identity")
    project_id: str = Field(..., description="Bound project")
    host_path: Path = Field(..., description="Host-visible project storage directory")
    workdir: str = Field(..., description="Project root as seen inside the sandbox")
    port: Optional[int] = Field(None, description="Allocated host port for the preview")
    status: SandboxStatus = Field(SandboxStatus.RUNNING, description="Lifecycle status")


class SandboxInfo(BaseModel):
    """Runtime details reported for a live container."""
    container_id: str
    container_name: str
    host_project_path: str
    container_workdir: str
    status: str


class WatchEvent(BaseModel):
    """A change observed in sandbox storage that the sandbox did not cause."""
    kind: Literal["changed", "deleted"]
    path: str = Field(..., description="Path relative to the project root")
    content: Optional[str] = Field(None, description="New contents for changed files")
    encoding: Literal["utf-8", "base64"] = "utf-8"

    def to_payload(self) -> Dict[str, Any]:
        """Wire form sent to editing sessions."""
        payload: Dict[str, Any] = {"type": self.kind, "path": self.path}
        if self.kind == "changed":
            payload["content"] = self.content
            if self.encoding != "utf-8":
                payload["encoding"] = self.encoding
        return payload


# =============================================================================
# COMMAND RESULTS
# =============================================================================

class ExecResult(BaseModel):
    """Combined output and exit code of one command."""
    output: str = ""
    exit_code: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SanitizedReport(BaseModel):
    """Bounded, noise-reduced command output handed to the agent."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def render(self) -> str:
        """Render the report, omitting empty sections."""
        parts = [f"Exit Code: {self.exit_code}"]
        if self.stdout:
            parts.append(f"\nSTDOUT:\n{self.stdout}")
        if self.stderr:
            parts.append(f"\nSTDERR:\n{self.stderr}")
        return "\n".join(parts)


class ConsoleLog(BaseModel):
    """A console message captured from the preview."""
    level: Literal["log", "warn", "error"]
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)
