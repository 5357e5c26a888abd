"""
Tests for the mermaid-cli converter and its temp file handling.
"""

import asyncio
import json
import os
import time
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from mermaid_pdf.config import PRODUCTION, Settings
from mermaid_pdf.errors import ConversionTimeoutError, ExternalToolError
from mermaid_pdf.internal.cli_convert import (
    TEMP_PREFIX,
    MermaidCliConverter,
    conversion_workspace,
    sweep_stale_files,
)

FAKE_PDF = b"%PDF-1.4\n% fake mmdc output\n"


class FakeProcess:
    """Stands in for asyncio.subprocess.Process"""

    def __init__(self, returncode=0, stdout=b"", stderr=b"", hang=False):
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr
        self._hang = hang
        self.killed = False

    async def communicate(self):
        if self._hang:
            await asyncio.sleep(3600)
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


def fake_mmdc(process, output=FAKE_PDF):
    """
    Build a create_subprocess_exec replacement.

    It records the command, the files present while mmdc "runs" and the
    input and browser config it was given, then writes ``output`` to the
    -o path unless ``output`` is None.
    """
    seen = {}

    async def fake_exec(*command, **kwargs):
        command = list(command)
        input_path = Path(command[command.index("-i") + 1])
        output_path = Path(command[command.index("-o") + 1])
        config_path = Path(command[command.index("-p") + 1])

        seen["command"] = command
        seen["source"] = input_path.read_text(encoding="utf-8")
        seen["browser_config"] = json.loads(config_path.read_text(encoding="utf-8"))
        if output is not None:
            output_path.write_bytes(output)
        seen["files"] = sorted(path.name for path in output_path.parent.iterdir())
        return process

    return fake_exec, seen


def _converter(temp_dir, **overrides):
    return MermaidCliConverter(Settings(temp_dir=str(temp_dir), mmdc_command="mmdc", **overrides))


def _exec_target():
    return "mermaid_pdf.internal.cli_convert.asyncio.create_subprocess_exec"


class TestMermaidCliConverter:

    @pytest.mark.asyncio
    async def test_successful_conversion(self, temp_dir):
        """mmdc output is returned and the request's temp files are removed."""
        fake_exec, seen = fake_mmdc(FakeProcess())

        with patch(_exec_target(), side_effect=fake_exec):
            pdf_bytes = await _converter(temp_dir).convert("graph TD;\n A-->B;")

        assert pdf_bytes == FAKE_PDF
        assert seen["source"] == "graph TD;\n A-->B;"
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_command_line(self, temp_dir):
        fake_exec, seen = fake_mmdc(FakeProcess())

        with patch(_exec_target(), side_effect=fake_exec):
            await _converter(temp_dir).convert("graph TD;\n A-->B;")

        command = seen["command"]
        assert command[0] == "mmdc"
        assert "--pdfFit" in command
        assert command[command.index("-o") + 1].endswith(".pdf")

    @pytest.mark.asyncio
    async def test_temp_files_are_uuid_named(self, temp_dir):
        fake_exec, seen = fake_mmdc(FakeProcess())

        with patch(_exec_target(), side_effect=fake_exec):
            await _converter(temp_dir).convert("graph TD;\n A-->B;")

        assert len(seen["files"]) == 3
        assert all(name.startswith(TEMP_PREFIX) for name in seen["files"])
        request_ids = {name[len(TEMP_PREFIX):len(TEMP_PREFIX) + 32] for name in seen["files"]}
        assert len(request_ids) == 1

    @pytest.mark.asyncio
    async def test_npx_command_is_split(self, temp_dir):
        fake_exec, seen = fake_mmdc(FakeProcess())
        converter = _converter(temp_dir)
        converter.settings = Settings(temp_dir=str(temp_dir), mmdc_command="npx -y @mermaid-js/mermaid-cli")

        with patch(_exec_target(), side_effect=fake_exec):
            await converter.convert("graph TD;\n A-->B;")

        assert seen["command"][:3] == ["npx", "-y", "@mermaid-js/mermaid-cli"]

    @pytest.mark.asyncio
    async def test_production_browser_config(self, temp_dir):
        """The packaged Chromium path and flags reach mmdc through -p."""
        fake_exec, seen = fake_mmdc(FakeProcess())
        converter = _converter(
            temp_dir,
            environment=PRODUCTION,
            chromium_executable_path="/opt/chromium/chrome",
            chromium_args=["--no-sandbox"],
        )

        with patch(_exec_target(), side_effect=fake_exec):
            await converter.convert("graph TD;\n A-->B;")

        assert seen["browser_config"] == {
            "headless": True,
            "executablePath": "/opt/chromium/chrome",
            "args": ["--no-sandbox"],
        }

    @pytest.mark.asyncio
    async def test_nonzero_exit_reports_stderr(self, temp_dir):
        """A failing mmdc surfaces its exit code and stderr; no files remain."""
        process = FakeProcess(returncode=1, stderr=b"Error: Parse error on line 2\n")
        fake_exec, _ = fake_mmdc(process, output=None)

        with patch(_exec_target(), side_effect=fake_exec):
            with pytest.raises(ExternalToolError) as exc_info:
                await _converter(temp_dir).convert("graph TD;\n A-->")

        error = exc_info.value
        assert error.returncode == 1
        assert "Exit code: 1" in error.message
        assert "Parse error on line 2" in error.message
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_output(self, temp_dir):
        fake_exec, _ = fake_mmdc(FakeProcess(stderr=b"warning: nothing rendered"), output=None)

        with patch(_exec_target(), side_effect=fake_exec):
            with pytest.raises(ExternalToolError) as exc_info:
                await _converter(temp_dir).convert("graph TD;\n A-->B;")

        assert "no PDF output" in exc_info.value.message
        assert "nothing rendered" in exc_info.value.message
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_empty_output(self, temp_dir):
        fake_exec, _ = fake_mmdc(FakeProcess(), output=b"")

        with patch(_exec_target(), side_effect=fake_exec):
            with pytest.raises(ExternalToolError):
                await _converter(temp_dir).convert("graph TD;\n A-->B;")

        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, temp_dir):
        process = FakeProcess(hang=True)
        fake_exec, _ = fake_mmdc(process)

        with patch(_exec_target(), side_effect=fake_exec):
            with pytest.raises(ConversionTimeoutError) as exc_info:
                await _converter(temp_dir, conversion_timeout=0.05).convert("graph TD;\n A-->B;")

        assert process.killed
        assert exc_info.value.status_code == 504
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_cancellation_kills_process(self, temp_dir):
        """A cancelled request terminates mmdc before its files are removed."""
        process = FakeProcess(hang=True)
        fake_exec, seen = fake_mmdc(process)

        with patch(_exec_target(), side_effect=fake_exec):
            task = asyncio.create_task(_converter(temp_dir).convert("graph TD;\n A-->B;"))
            while "files" not in seen:
                await asyncio.sleep(0)
            await asyncio.sleep(0)
            task.cancel()

            with pytest.raises(asyncio.CancelledError):
                await task

        assert process.killed
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_executable_not_found(self, temp_dir):
        with patch(_exec_target(), new=AsyncMock(side_effect=FileNotFoundError("mmdc"))):
            with pytest.raises(ExternalToolError) as exc_info:
                await _converter(temp_dir).convert("graph TD;\n A-->B;")

        assert "not found" in exc_info.value.message
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_chromium_path_in_production(self, temp_dir):
        """Production without a browser binary fails before anything is written."""
        converter = _converter(temp_dir, environment=PRODUCTION)

        with patch(_exec_target()) as mock_exec:
            with pytest.raises(ExternalToolError):
                await converter.convert("graph TD;\n A-->B;")

        mock_exec.assert_not_called()
        assert list(temp_dir.iterdir()) == []


class TestConversionWorkspace:

    def test_files_removed_after_exception(self, temp_dir):
        with pytest.raises(RuntimeError):
            with conversion_workspace(temp_dir) as files:
                files.input_path.write_text("graph TD;")
                files.output_path.write_bytes(b"partial")
                raise RuntimeError("conversion failed")

        assert list(temp_dir.iterdir()) == []

    def test_cleanup_failure_does_not_mask_error(self, temp_dir):
        """An unlink error is logged; the conversion's own error propagates."""
        with patch.object(Path, "unlink", side_effect=OSError("busy")):
            with pytest.raises(RuntimeError, match="conversion failed"):
                with conversion_workspace(temp_dir) as files:
                    files.input_path.write_text("graph TD;")
                    raise RuntimeError("conversion failed")

    def test_directory_is_created(self, tmp_path):
        target = tmp_path / "nested" / "dir"

        with conversion_workspace(target) as files:
            assert files.input_path.parent == target
            assert target.is_dir()


class TestSweepStaleFiles:

    def test_only_old_conversion_files_are_removed(self, temp_dir):
        two_hours_ago = time.time() - 2 * 3600

        stale = temp_dir / f"{TEMP_PREFIX}old.pdf"
        fresh = temp_dir / f"{TEMP_PREFIX}new.pdf"
        unrelated = temp_dir / "keep-me.pdf"
        for path in (stale, fresh, unrelated):
            path.write_bytes(b"x")
        os.utime(stale, (two_hours_ago, two_hours_ago))
        os.utime(unrelated, (two_hours_ago, two_hours_ago))

        cleaned = sweep_stale_files(temp_dir, max_age_hours=1)

        assert cleaned == 1
        assert not stale.exists()
        assert fresh.exists()
        assert unrelated.exists()

    def test_missing_directory(self, tmp_path):
        assert sweep_stale_files(tmp_path / "absent") == 0
