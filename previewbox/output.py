"""
Reduce raw command output to a bounded, high-signal report for the agent.

The pipeline runs the same stages on stdout and stderr:

    1. strip terminal control sequences
    2. drop progress noise (unless the line looks important)
    3. summarize known commands on success (install, build, ...)
    4. collapse runs of near-identical lines
    5. truncate to a head/tail window

No stage raises; malformed input degrades to pass-through.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Sequence

from previewbox.schemas import SanitizedReport

STDOUT_MAX_CHARS = 6000
STDERR_MAX_CHARS = 4000
HEAD_RATIO = 0.6

TRUNCATION_MARKER = "\n--- [truncated {removed} chars] ---\n"
REPEAT_MARKER = "... (repeated {count} more times)"


# =============================================================================
# PATTERN TABLES
# =============================================================================

# Terminal control sequences; OSC first so its payload is not half-eaten by CSI
CONTROL_PATTERNS: List[Pattern] = [
    re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"),
    re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]"),
    re.compile(r"\r"),
]

PROGRESS_PATTERNS: List[Pattern] = [
    re.compile(r"^\s*\[([#=\->.]+\s*)\]\s*"),
    re.compile(r"^\s*\d{1,3}%\s"),
    re.compile(r"^npm timing\b"),
    re.compile(r"^npm http\b"),
    re.compile(r"^\s*[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]"),
    re.compile(r"^\s*[|/\\-]\s+(Compiling|Building|Bundling|Optimizing|Generating)\b", re.IGNORECASE),
]

# Lines matching these survive the progress filter
KEEP_PATTERNS: List[Pattern] = [
    re.compile(r"error", re.IGNORECASE),
    re.compile(r"warn", re.IGNORECASE),
    re.compile(r"ERR!"),
    re.compile(r"failed", re.IGNORECASE),
    re.compile(r"deprecated", re.IGNORECASE),
    re.compile(r"vulnerabilit", re.IGNORECASE),
]

_DIGIT_RUN = re.compile(r"\d+")


@dataclass(frozen=True)
class SummaryProfile:
    """
    How to summarize successful output of one family of commands.

    Attributes:
        name: Profile name, for registration and debugging
        command_pattern: Matched against the command string
        keep_patterns: A line is kept when any of these matches it
        keep_last_lines: Also keep this many trailing non-empty lines
    """
    name: str
    command_pattern: Pattern
    keep_patterns: Sequence[Pattern]
    keep_last_lines: int = 0

    def matches(self, command: str) -> bool:
        return bool(self.command_pattern.search(command))

    def summarize(self, text: str) -> str:
        lines = text.split("\n")
        kept = [
            line for line in lines
            if line.strip() and any(p.search(line.strip()) for p in self.keep_patterns)
        ]

        if self.keep_last_lines:
            tail = [line for line in lines if line.strip()][-self.keep_last_lines:]
            for line in tail:
                if line not in kept:
                    kept.append(line)

        return "\n".join(kept)


INSTALL_PROFILE = SummaryProfile(
    name="install",
    command_pattern=re.compile(
        r"\b(?:npm\s+(?:install|ci|i)|pnpm\s+(?:install|i|add)|yarn\s+(?:install|add)|pip3?\s+install)\b"
    ),
    keep_patterns=(
        re.compile(r"^added \d+ package"),
        re.compile(r"^Successfully installed\b"),
        re.compile(r"up to date", re.IGNORECASE),
        re.compile(r"vulnerabilit", re.IGNORECASE),
        re.compile(r"warn", re.IGNORECASE),
        re.compile(r"deprecated", re.IGNORECASE),
        re.compile(r"ERR!"),
        re.compile(r"error", re.IGNORECASE),
    ),
)

BUILD_PROFILE = SummaryProfile(
    name="build",
    command_pattern=re.compile(r"\b(?:build|ng build|npm run build|npx.*build)\b"),
    keep_patterns=(
        re.compile(r"warn|error|ERR!", re.IGNORECASE),
        re.compile(r"chunk|bundle|\.js\s+\d", re.IGNORECASE),
        re.compile(r"build (?:succeeded|completed|done|failed)", re.IGNORECASE),
        re.compile(r"successfully compiled", re.IGNORECASE),
        re.compile(r"built in \d", re.IGNORECASE),
        re.compile(r"output size", re.IGNORECASE),
        re.compile(r"total:", re.IGNORECASE),
        re.compile(r"time:", re.IGNORECASE),
        re.compile(r"application bundle", re.IGNORECASE),
    ),
    keep_last_lines=3,
)

# Checked in order; the first match wins
_profiles: List[SummaryProfile] = [INSTALL_PROFILE, BUILD_PROFILE]


def register_profile(profile: SummaryProfile, first: bool = False) -> None:
    """
    Add a summary profile.

    Args:
        profile: Profile to add (replaces an existing one with the same name)
        first: Check it before the built-in profiles
    """
    _profiles[:] = [p for p in _profiles if p.name != profile.name]
    if first:
        _profiles.insert(0, profile)
    else:
        _profiles.append(profile)


def find_profile(command: str) -> Optional[SummaryProfile]:
    """Return the first profile matching a command, if any."""
    for profile in _profiles:
        if profile.matches(command):
            return profile
    return None


# =============================================================================
# STAGES
# =============================================================================

def strip_control_sequences(text: str) -> str:
    for pattern in CONTROL_PATTERNS:
        text = pattern.sub("", text)
    return text


def drop_progress_lines(text: str) -> str:
    kept = []
    for line in text.split("\n"):
        if any(p.search(line) for p in KEEP_PATTERNS):
            kept.append(line)
        elif not any(p.search(line) for p in PROGRESS_PATTERNS):
            kept.append(line)
    return "\n".join(kept)


def summarize_for_command(text: str, command: str, exit_code: int) -> str:
    """Apply the matching summary profile, only for successful commands."""
    if exit_code != 0:
        return text
    profile = find_profile(command)
    if profile is None:
        return text
    return profile.summarize(text)


def collapse_repeated_lines(text: str) -> str:
    """
    Collapse consecutive lines that differ only in their numbers.

    The first line of a run is kept verbatim and followed by a marker
    counting the rest. Blank lines never form runs.
    """
    result: List[str] = []
    previous: Optional[str] = None
    repeats = 0

    for line in text.split("\n"):
        normalized = _DIGIT_RUN.sub("N", line.strip())
        if normalized and normalized == previous:
            repeats += 1
            continue
        if repeats:
            result.append(REPEAT_MARKER.format(count=repeats))
        result.append(line)
        previous = normalized
        repeats = 0

    if repeats:
        result.append(REPEAT_MARKER.format(count=repeats))

    return "\n".join(result)


def truncate_middle(text: str, max_chars: int) -> str:
    """Keep the first 60% and last 40% of the limit around a marker."""
    if len(text) <= max_chars:
        return text
    head_chars = int(max_chars * HEAD_RATIO)
    tail_chars = max_chars - head_chars
    removed = len(text) - head_chars - tail_chars
    tail = text[-tail_chars:] if tail_chars else ""
    return text[:head_chars] + TRUNCATION_MARKER.format(removed=removed) + tail


def _clean_stream(text: str, command: str, exit_code: int, max_chars: int) -> str:
    text = strip_control_sequences(text)
    text = drop_progress_lines(text)
    text = summarize_for_command(text, command, exit_code)
    text = collapse_repeated_lines(text)
    return truncate_middle(text.strip(), max_chars)


# =============================================================================
# ENTRY POINTS
# =============================================================================

def sanitize(
    command: str,
    stdout: Optional[str],
    stderr: Optional[str],
    exit_code: int,
) -> SanitizedReport:
    """
    Run the full pipeline over one command's output.

    Args:
        command: The command that produced the output
        stdout: Raw standard output (None treated as empty)
        stderr: Raw standard error (None treated as empty)
        exit_code: Process exit code

    Returns:
        SanitizedReport with cleaned, bounded streams
    """
    command = command or ""
    return SanitizedReport(
        exit_code=exit_code,
        stdout=_clean_stream(stdout or "", command, exit_code, STDOUT_MAX_CHARS),
        stderr=_clean_stream(stderr or "", command, exit_code, STDERR_MAX_CHARS),
    )


def sanitize_command_output(
    command: str,
    stdout: Optional[str],
    stderr: Optional[str],
    exit_code: int,
) -> str:
    """Sanitize and render output as the text handed to the agent."""
    return sanitize(command, stdout, stderr, exit_code).render()
