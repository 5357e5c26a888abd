"""
Mermaid CLI converter

Server-side conversion through the mermaid-cli (mmdc) executable. Each
request gets its own uuid-named input, output and browser-config files,
which are removed again however the conversion ends.
"""

import asyncio
import json
import logging
import shlex
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Tuple, Union

from mermaid_pdf.config import Settings
from mermaid_pdf.errors import ConversionTimeoutError, ExternalToolError

logger = logging.getLogger(__name__)

TEMP_PREFIX = "mermaid-pdf-"


@dataclass(frozen=True)
class ConversionFiles:
    input_path: Path
    output_path: Path
    config_path: Path

    def all_paths(self) -> Tuple[Path, Path, Path]:
        return (self.input_path, self.output_path, self.config_path)


@contextmanager
def conversion_workspace(temp_dir: Union[str, Path]) -> Iterator[ConversionFiles]:
    """
    Reserve a set of per-request temp file paths.

    Files are not created here; whatever exists at exit is deleted. Deletion
    errors are logged and never replace the conversion's own result.

    Args:
        temp_dir: Directory to place the files in

    Yields:
        ConversionFiles for this request
    """
    base = Path(temp_dir)
    base.mkdir(parents=True, exist_ok=True)
    request_id = uuid.uuid4().hex
    files = ConversionFiles(
        input_path=base / f"{TEMP_PREFIX}{request_id}.mmd",
        output_path=base / f"{TEMP_PREFIX}{request_id}.pdf",
        config_path=base / f"{TEMP_PREFIX}{request_id}-browser.json",
    )
    try:
        yield files
    finally:
        for path in files.all_paths():
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove temp file {path}: {str(e)}")


def sweep_stale_files(temp_dir: Union[str, Path], max_age_hours: float = 1.0) -> int:
    """
    Remove conversion leftovers older than ``max_age_hours``.

    Covers requests that were killed by the host before their own cleanup
    could run.

    Returns:
        Number of files removed
    """
    base = Path(temp_dir)
    if not base.is_dir():
        return 0

    max_age_seconds = max_age_hours * 3600
    current_time = time.time()
    cleaned_count = 0

    for file_path in base.glob(f"{TEMP_PREFIX}*"):
        try:
            if file_path.is_file() and current_time - file_path.stat().st_mtime > max_age_seconds:
                file_path.unlink()
                cleaned_count += 1
                logger.info(f"Removed stale temp file: {file_path.name}")
        except OSError as e:
            logger.warning(f"Failed to remove stale temp file {file_path}: {str(e)}")

    return cleaned_count


class MermaidCliConverter:
    """Runs mmdc once per conversion"""

    def __init__(self, settings: Settings):
        self.settings = settings

    def build_command(self, files: ConversionFiles) -> List[str]:
        return [
            *shlex.split(self.settings.mmdc_command),
            "-i", str(files.input_path),
            "-o", str(files.output_path),
            "--pdfFit",
            "-p", str(files.config_path),
        ]

    async def convert(self, source: str) -> bytes:
        """
        Convert Mermaid source to PDF bytes with mmdc.

        Args:
            source: Diagram source

        Returns:
            PDF bytes

        Raises:
            ExternalToolError: mmdc missing, failed, or wrote no output
            ConversionTimeoutError: mmdc exceeded the conversion timeout
        """
        browser_config = self.settings.browser_profile.puppeteer_config()

        with conversion_workspace(self.settings.temp_dir) as files:
            files.input_path.write_text(source, encoding="utf-8")
            files.config_path.write_text(json.dumps(browser_config), encoding="utf-8")

            command = self.build_command(files)
            logger.info(f"Executing conversion command: {shlex.join(command)}")
            _, stderr = await self._run(command)

            if not files.output_path.is_file() or files.output_path.stat().st_size == 0:
                raise ExternalToolError("Converter produced no PDF output", stderr=stderr)

            pdf_bytes = files.output_path.read_bytes()
            logger.info(f"mmdc conversion successful: {len(pdf_bytes)} bytes")
            return pdf_bytes

    async def _kill(self, process) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            pass  # already exited
        await process.wait()

    async def _run(self, command: List[str]) -> Tuple[str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise ExternalToolError(f"Converter executable not found: {command[0]}")
        except PermissionError as e:
            raise ExternalToolError(f"Permission denied running converter: {str(e)}")

        timeout = self.settings.conversion_timeout
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            logger.error(f"mmdc exceeded {timeout:g}s and was terminated")
            raise ConversionTimeoutError(f"Conversion exceeded {timeout:g} seconds and was terminated")
        except asyncio.CancelledError:
            # mmdc must not outlive the workspace cleanup
            await self._kill(process)
            logger.warning("mmdc conversion cancelled, process terminated")
            raise

        stdout_text = (stdout or b"").decode("utf-8", errors="replace")
        stderr_text = (stderr or b"").decode("utf-8", errors="replace")

        if stdout_text.strip():
            logger.info(f"MMDC Output: {stdout_text.strip()}")
        if stderr_text.strip():
            logger.warning(f"MMDC Stderr: {stderr_text.strip()}")

        if process.returncode != 0:
            logger.error(f"MMDC exited with code {process.returncode}")
            raise ExternalToolError(
                f"Failed to convert mermaid content. Exit code: {process.returncode}",
                returncode=process.returncode,
                stderr=stderr_text,
            )

        return stdout_text, stderr_text
