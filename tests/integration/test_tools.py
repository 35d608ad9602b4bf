"""
Integration tests for the subprocess tool adapters.

The database executables are replaced by small shell scripts written
into a temporary exec directory.
"""

import asyncio
import gzip
import os
import stat
import tempfile
from pathlib import Path

import pytest

from osmsync.replicator.apply.tools import (
    GzipDecompressor,
    SubprocessApplyTool,
    SubprocessMigrationTool,
    is_shutdown_exit,
)
from osmsync.replicator.config import MetaMode, ToolsConfig
from osmsync.replicator.errors import BatchPreparationError, MigrationError, ShutdownRequested
from osmsync.replicator.runtime.cancellation import CancellationToken

RECORDING_TOOL = """#!/bin/sh
printf '%s\\n' "$@" > "$(dirname "$0")/args.txt"
exit ${FAKE_TOOL_EXIT:-0}
"""

SLOW_TOOL = """#!/bin/sh
exec sleep 30
"""


def install(exec_dir: Path, name: str, script: str) -> None:
    path = exec_dir / name
    path.write_text(script)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


class TestSubprocessTools:
    """Tests for SubprocessApplyTool and SubprocessMigrationTool."""

    @pytest.fixture
    def exec_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def tools_config(self, exec_dir):
        return ToolsConfig(exec_dir=str(exec_dir), terminate_grace_seconds=5)

    @pytest.mark.asyncio
    async def test_apply_command_line(self, exec_dir, tools_config, monkeypatch):
        monkeypatch.delenv("FAKE_TOOL_EXIT", raising=False)
        install(exec_dir, "update_from_dir", RECORDING_TOOL)
        tool = SubprocessApplyTool(tools_config)

        exit_code = await tool.apply(Path("/tmp/process_5"), "2026-10-18T12\\:05\\:00Z", MetaMode.ATTIC)

        assert exit_code == 0
        args = (exec_dir / "args.txt").read_text().split()
        assert args == [
            "--osc-dir=/tmp/process_5",
            "--version=2026-10-18T12\\:05\\:00Z",
            "--keep-attic",
            "--flush-size=0",
        ]

    def test_command_without_meta(self, tools_config):
        tool = SubprocessApplyTool(tools_config)
        command = tool.command(Path("/x"), "v", MetaMode.NO)
        assert command[1:] == ["--osc-dir=/x", "--version=v", "--flush-size=0"]

    @pytest.mark.asyncio
    async def test_apply_shutdown_code(self, exec_dir, tools_config, monkeypatch):
        monkeypatch.setenv("FAKE_TOOL_EXIT", "15")
        install(exec_dir, "update_from_dir", RECORDING_TOOL)

        exit_code = await SubprocessApplyTool(tools_config).apply(Path("/x"), "v", MetaMode.YES)

        assert exit_code == 15
        assert is_shutdown_exit(exit_code)
        assert not is_shutdown_exit(1)

    @pytest.mark.asyncio
    async def test_missing_apply_tool(self, tools_config):
        exit_code = await SubprocessApplyTool(tools_config).apply(Path("/x"), "v", MetaMode.NO)
        assert exit_code == 127

    @pytest.mark.asyncio
    async def test_cancel_terminates_tool(self, exec_dir, tools_config):
        """A shutdown request terminates the running tool."""
        install(exec_dir, "update_from_dir", SLOW_TOOL)
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.2, token.cancel, "test")

        with pytest.raises(ShutdownRequested):
            await asyncio.wait_for(
                token.run(SubprocessApplyTool(tools_config).apply(Path("/x"), "v", MetaMode.NO)),
                timeout=10,
            )

    @pytest.mark.asyncio
    async def test_migration(self, exec_dir, tools_config, monkeypatch):
        monkeypatch.delenv("FAKE_TOOL_EXIT", raising=False)
        install(exec_dir, "migrate_database", RECORDING_TOOL)

        await SubprocessMigrationTool(tools_config).migrate()

        assert (exec_dir / "args.txt").read_text().split() == ["--migrate"]

    @pytest.mark.asyncio
    async def test_migration_failure(self, exec_dir, tools_config, monkeypatch):
        monkeypatch.setenv("FAKE_TOOL_EXIT", "3")
        install(exec_dir, "migrate_database", RECORDING_TOOL)

        with pytest.raises(MigrationError):
            await SubprocessMigrationTool(tools_config).migrate()

    @pytest.mark.asyncio
    async def test_missing_migration_tool(self, tools_config):
        with pytest.raises(MigrationError):
            await SubprocessMigrationTool(tools_config).migrate()


class TestGzipDecompressor:
    """Tests for GzipDecompressor."""

    def test_decompress(self, diff_dir):
        source = diff_dir / "001.osc.gz"
        source.write_bytes(gzip.compress(b"<osmChange/>"))

        GzipDecompressor().decompress(source, diff_dir / "000000001.osc")

        assert (diff_dir / "000000001.osc").read_bytes() == b"<osmChange/>"

    def test_corrupt_source(self, diff_dir):
        source = diff_dir / "001.osc.gz"
        source.write_bytes(b"not gzip at all")

        with pytest.raises(BatchPreparationError):
            GzipDecompressor().decompress(source, diff_dir / "000000001.osc")

        assert not os.path.exists(diff_dir / "000000001.osc")

    def test_missing_source(self, diff_dir):
        with pytest.raises(BatchPreparationError):
            GzipDecompressor().decompress(diff_dir / "absent.osc.gz", diff_dir / "out.osc")
