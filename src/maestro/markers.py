"""Shared pattern tables for classifying tool actions and command output."""

from __future__ import annotations

import re

# Matched against the file name only, so "latest_version.py" is not a test.
TEST_FILE_SUFFIXES: tuple[str, ...] = (
    ".test.ts",
    ".test.js",
    ".spec.ts",
    ".spec.js",
    "_test.go",
    "_test.py",
)
TEST_FILE_PREFIXES: tuple[str, ...] = ("test_",)

# Whole command words; "npm run test:unit" counts through its "test" stem.
TEST_COMMAND_WORDS: frozenset[str] = frozenset({"test", "jest", "vitest", "pytest"})

_COMMAND_SPLIT = re.compile(r"[\s;&|()]+")

TEST_FAILURE_MARKERS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bFAIL(?:ED|URE|URES)?\b"),
    re.compile(r"\bfailed\b"),
    re.compile(r"\bfailing\b"),
    re.compile(r"\b[1-9]\d* errors?\b"),
    re.compile(r"\bError\b"),
    re.compile(r"✗"),
)

# Word-bounded so "token" does not count as "ok".
TEST_SUCCESS_MARKERS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bPASS(?:ED)?\b"),
    re.compile(r"\bpassed\b"),
    re.compile(r"\bok\b"),
    re.compile(r"\bOK\b"),
    re.compile(r"✓"),
)

ENVIRONMENT_FAILURE_PATTERNS: tuple[str, ...] = (
    "command not found",
    "enoent",
    "eacces",
    "eperm",
    "permission denied",
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "etimedout",
    "lockfile",
    "certificate",
    "ssl",
)


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def _matches_any(text: str, patterns: tuple[re.Pattern[str], ...]) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def is_test_file(path: str) -> bool:
    """Return ``True`` when *path* names a test file."""
    if not path:
        return False
    name = re.split(r"[\\/]", path)[-1]
    return name.endswith(TEST_FILE_SUFFIXES) or name.startswith(TEST_FILE_PREFIXES)


def is_test_command(command: str) -> bool:
    """Return ``True`` when a shell command looks like a test run."""
    if not command:
        return False
    for word in _COMMAND_SPLIT.split(command.lower()):
        stem = word.rsplit("/", 1)[-1].split(":", 1)[0]
        if stem in TEST_COMMAND_WORDS:
            return True
    return False


def looks_like_test_failure(output: str) -> bool:
    if not output:
        return False
    return _matches_any(output, TEST_FAILURE_MARKERS)


def looks_like_test_success(output: str) -> bool:
    """Return ``True`` for passing output. Failure markers take precedence."""
    if not output:
        return False
    if looks_like_test_failure(output):
        return False
    return _matches_any(output, TEST_SUCCESS_MARKERS)


def looks_like_environment_failure(text: str) -> bool:
    """Return ``True`` when failure looks infrastructural rather than a code bug."""
    if not text:
        return False
    return _contains_any(text, ENVIRONMENT_FAILURE_PATTERNS)
