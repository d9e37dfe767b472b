"""Tests for maestro.markers: output and path classifiers."""

from __future__ import annotations

import pytest

from maestro.markers import (
    is_test_command,
    is_test_file,
    looks_like_environment_failure,
    looks_like_test_failure,
    looks_like_test_success,
)


@pytest.mark.parametrize(
    "path",
    ["src/auth.test.ts", "lib/x.spec.js", "pkg/db_test.go", "tests/test_api.py", "api_test.py", "pkg\\test_win.py"],
)
def test_test_files(path):
    assert is_test_file(path)


@pytest.mark.parametrize(
    "path", ["src/auth.ts", "README.md", "", "src/latest_version.py", "test_utils/helpers.py"]
)
def test_non_test_files(path):
    assert not is_test_file(path)


@pytest.mark.parametrize(
    "cmd",
    [
        "bun test",
        "npx vitest run",
        "pytest -q",
        "go test ./...",
        "npm test",
        "npm run test:unit",
        "cd app && ./node_modules/.bin/jest",
        "python -m pytest tests/",
    ],
)
def test_test_commands(cmd):
    assert is_test_command(cmd)


def test_non_test_command():
    assert not is_test_command("git status")
    assert not is_test_command("cat latest.log")
    assert not is_test_command("npm run attest")
    assert not is_test_command("")


@pytest.mark.parametrize(
    "output",
    ["FAIL src/a.test.ts", "1 failed, 3 passed", "2 errors", "Error: boom", "✗ adds numbers"],
)
def test_failure_output(output):
    assert looks_like_test_failure(output)
    assert not looks_like_test_success(output)


@pytest.mark.parametrize("output", ["PASS src/a.test.ts", "5 passed in 0.1s", "ok  pkg/x 0.01s", "✓ adds"])
def test_success_output(output):
    assert looks_like_test_success(output)
    assert not looks_like_test_failure(output)


def test_success_markers_are_word_bounded():
    assert not looks_like_test_success("token refreshed")


def test_zero_errors_is_not_a_failure():
    assert not looks_like_test_failure("0 errors")


def test_environment_failures():
    assert looks_like_environment_failure("bash: bun: command not found")
    assert looks_like_environment_failure("Error: ETIMEDOUT while fetching")
    assert not looks_like_environment_failure("expected 2 to equal 3")
