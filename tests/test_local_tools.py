"""Tests for the local repository tool family."""

import asyncio
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from investigator.tools import (
    RepoPaths,
    edit_file,
    get_repo_index,
    grep,
    list_directory,
    read_file,
    register_local_tools,
    run_command,
    search_files,
)
from investigator.tools.file_tools import glob_to_regex


@pytest.fixture
def repo(tmp_path):
    base = tmp_path / "repo"
    (base / "src" / "app").mkdir(parents=True)
    (base / "src" / "app" / "Codeunit.al").write_text(
        "codeunit 50100 Sales\n{\n    procedure Post()\n    begin\n        Error('Posting failed');\n    end;\n}\n",
        encoding="utf-8",
    )
    (base / "src" / "app" / "app.json").write_text('{"name": "Sales"}\n', encoding="utf-8")
    (base / "build.yml").write_text("steps:\n  - script: build.ps1\n", encoding="utf-8")
    (base / "node_modules" / "pkg").mkdir(parents=True)
    (base / "node_modules" / "pkg" / "index.js").write_text("Error('ignored')\n", encoding="utf-8")
    (base / "blob.bin").write_bytes(b"Error\x00\x01\x02")

    other = tmp_path / "shared"
    other.mkdir()
    (other / "common.ps1").write_text("Write-Error 'Shared failure'\n", encoding="utf-8")

    return RepoPaths(base, [base, other])


def run(coro):
    return asyncio.run(coro)


class TestRepoPaths:
    def test_relative_paths_use_first_root_where_they_exist(self, repo, tmp_path):
        assert repo.resolve("common.ps1") == (tmp_path / "shared" / "common.ps1").resolve()
        assert repo.resolve("build.yml") == (tmp_path / "repo" / "build.yml").resolve()
        assert repo.resolve("missing.txt") == (tmp_path / "repo" / "missing.txt").resolve()

    def test_roots_deduplicated(self, tmp_path):
        paths = RepoPaths(tmp_path, [tmp_path, str(tmp_path), tmp_path / "."])
        assert paths.roots == [tmp_path.resolve()]


class TestFileTools:
    def test_read_file_range(self, repo):
        assert run(read_file(repo, "src/app/Codeunit.al", start_line=3, end_line=5)) == (
            "    procedure Post()\n    begin\n        Error('Posting failed');"
        )

    def test_read_missing_file(self, repo):
        with pytest.raises(FileNotFoundError):
            run(read_file(repo, "nope.al"))

    def test_edit_file_replaces_first_occurrence(self, repo, tmp_path):
        message = run(edit_file(repo, "build.yml", "build.ps1", "build.ps1 -Strict"))
        assert message == "Successfully edited build.yml. Replaced 9 chars with 17 chars."
        assert "build.ps1 -Strict" in (tmp_path / "repo" / "build.yml").read_text(encoding="utf-8")

    def test_edit_file_missing_string(self, repo):
        with pytest.raises(ValueError):
            run(edit_file(repo, "build.yml", "not there", "x"))

    def test_list_directory(self, repo):
        items = json.loads(run(list_directory(repo, "src/app")))
        assert items == [{"name": "app.json", "type": "file"}, {"name": "Codeunit.al", "type": "file"}]

    def test_list_directory_on_file(self, repo):
        with pytest.raises(NotADirectoryError):
            run(list_directory(repo, "build.yml"))


class TestSearch:
    def test_glob_semantics(self):
        assert glob_to_regex("**/*.al").match("src/app/Codeunit.al")
        assert glob_to_regex("**/*.al").match("Codeunit.AL")
        assert not glob_to_regex("src/*.al").match("src/app/Codeunit.al")

    def test_search_files_skips_vendor_dirs(self, repo):
        result = run(search_files(repo, "*.js"))
        assert result == "No files found matching pattern."

    def test_search_files_matches_relative_path(self, repo):
        result = run(search_files(repo, "src/**/app.json"))
        assert result == "Found 1 files:\nsrc/app/app.json"

    def test_search_files_across_roots(self, repo):
        result = run(search_files(repo, "*.ps1"))
        assert result.startswith("Found 1 files:")
        assert result.endswith("common.ps1")

    def test_grep_finds_matches_across_roots(self, repo):
        lines = run(grep(repo, r"error\(|write-error")).splitlines()
        assert any(line.endswith(":5:Error('Posting failed');") for line in lines)
        assert any("common.ps1:1:" in line for line in lines)
        assert not any("node_modules" in line for line in lines)

    def test_grep_file_pattern_and_limit(self, repo):
        result = run(grep(repo, "e", file_pattern="*.al", max_results=2))
        assert len(result.splitlines()) == 2
        assert all("Codeunit.al" in line for line in result.splitlines())

    def test_grep_no_matches(self, repo):
        assert run(grep(repo, "definitely-absent")) == "No matches found."

    def test_grep_invalid_regex(self, repo):
        with pytest.raises(ValueError):
            run(grep(repo, "("))

    def test_repo_index(self, tmp_path):
        index = tmp_path / "repo-index.json"
        index.write_text(json.dumps({"basePath": str(tmp_path), "lookupPaths": []}), encoding="utf-8")
        paths = RepoPaths(tmp_path, [tmp_path], index)
        report = json.loads(run(get_repo_index(paths)))
        assert report["path"] == str(index.resolve())
        assert report["content"]["basePath"] == str(tmp_path)


class TestShell:
    def test_success(self, repo):
        assert run(run_command(repo, "echo hello")).strip() == "hello"

    def test_failure_reports_output(self, repo):
        result = run(run_command(repo, "echo oops 1>&2; exit 3"))
        assert result.startswith("Command failed (exit code 3)")
        assert "oops" in result

    def test_timeout(self, repo):
        result = run(run_command(repo, "sleep 5", timeout=0.2))
        assert "timed out" in result

    def test_bad_cwd(self, repo):
        with pytest.raises(NotADirectoryError):
            run(run_command(repo, "echo hi", cwd="nope"))


class TestCatalog:
    def test_registers_every_tool(self, repo):
        registry = register_local_tools(repo)
        names = sorted(tool.name for tool in registry.list_tools())
        assert names == sorted([
            "read_file", "edit_file", "search_files", "grep",
            "get_repo_index", "list_directory", "run_command",
        ])

    def test_execute_through_registry(self, repo):
        registry = register_local_tools(repo)
        result = run(registry.execute("read_file", path="build.yml", start_line=1, end_line=1))
        assert result.success
        assert result.to_message() == "steps:"

    def test_edit_allows_empty_replacement(self, repo):
        registry = register_local_tools(repo)
        result = run(registry.execute("edit_file", path="build.yml", old_string="  - script: build.ps1\n", new_string=""))
        assert result.success

    def test_failures_are_reported(self, repo):
        registry = register_local_tools(repo)
        result = run(registry.execute("read_file", path="missing.al"))
        assert not result.success
        assert result.to_message().startswith("Error: FileNotFoundError")
