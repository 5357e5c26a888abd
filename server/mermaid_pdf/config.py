"""
Service configuration

Settings are read once from the environment (and an optional .env file) and
handed around explicitly. Nothing here is mutated after startup.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from mermaid_pdf.errors import ExternalToolError

load_dotenv()

DEVELOPMENT = "development"
PRODUCTION = "production"

DEFAULT_MERMAID_JS_URL = "https://cdn.jsdelivr.net/npm/mermaid@11/dist/mermaid.min.js"
DEFAULT_MMDC_COMMAND = "npx -y @mermaid-js/mermaid-cli"

# Launch flags for a Chromium build packaged for serverless hosts
SERVERLESS_CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-zygote",
    "--single-process",
]


def _split_list(value: Optional[str], default: List[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class BrowserProfile:
    """
    Headless browser launch settings for the current host

    Development uses whatever browser the tool bundles. Production points at
    a serverless-packaged Chromium binary and passes its launch flags.
    """
    environment: str = DEVELOPMENT
    executable_path: Optional[str] = None
    args: List[str] = field(default_factory=list)

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    def _require_executable(self) -> Optional[str]:
        if self.is_production and not self.executable_path:
            raise ExternalToolError(
                "CHROMIUM_EXECUTABLE_PATH must be set when APP_ENV is production"
            )
        return self.executable_path

    def playwright_launch_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``playwright.chromium.launch``"""
        options: Dict[str, Any] = {"headless": True}
        executable_path = self._require_executable()
        if executable_path:
            options["executable_path"] = executable_path
        if self.args:
            options["args"] = list(self.args)
        return options

    def puppeteer_config(self) -> Dict[str, Any]:
        """Contents of the browser config file passed to ``mmdc -p``"""
        config: Dict[str, Any] = {"headless": True}
        executable_path = self._require_executable()
        if executable_path:
            config["executablePath"] = executable_path
        if self.args:
            config["args"] = list(self.args)
        return config


@dataclass(frozen=True)
class Settings:
    environment: str = DEVELOPMENT
    chromium_executable_path: Optional[str] = None
    chromium_args: List[str] = field(default_factory=lambda: list(SERVERLESS_CHROMIUM_ARGS))
    mmdc_command: str = DEFAULT_MMDC_COMMAND
    mermaid_js_url: str = DEFAULT_MERMAID_JS_URL
    conversion_timeout: float = 60.0
    render_timeout_ms: int = 10000
    page_padding: float = 40.0
    temp_dir: str = field(default_factory=tempfile.gettempdir)
    temp_file_max_age_hours: float = 1.0
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables"""
        environment = (os.getenv("APP_ENV") or DEVELOPMENT).strip().lower()
        if environment not in (DEVELOPMENT, PRODUCTION):
            raise ValueError(f"APP_ENV must be '{DEVELOPMENT}' or '{PRODUCTION}', got '{environment}'")

        return cls(
            environment=environment,
            chromium_executable_path=os.getenv("CHROMIUM_EXECUTABLE_PATH") or None,
            chromium_args=_split_list(os.getenv("CHROMIUM_ARGS"), SERVERLESS_CHROMIUM_ARGS),
            mmdc_command=os.getenv("MMDC_COMMAND") or DEFAULT_MMDC_COMMAND,
            mermaid_js_url=os.getenv("MERMAID_JS_URL") or DEFAULT_MERMAID_JS_URL,
            conversion_timeout=float(os.getenv("CONVERSION_TIMEOUT_SECONDS") or 60),
            render_timeout_ms=int(os.getenv("RENDER_TIMEOUT_MS") or 10000),
            page_padding=float(os.getenv("PAGE_PADDING") or 40),
            temp_dir=os.getenv("TEMP_DIR") or tempfile.gettempdir(),
            temp_file_max_age_hours=float(os.getenv("TEMP_FILE_MAX_AGE_HOURS") or 1),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
            cors_origins=_split_list(os.getenv("CORS_ORIGINS"), ["*"]),
            host=os.getenv("HOST") or "0.0.0.0",
            port=int(os.getenv("PORT") or 8000),
        )

    @property
    def browser_profile(self) -> BrowserProfile:
        if self.environment == PRODUCTION:
            return BrowserProfile(
                environment=PRODUCTION,
                executable_path=self.chromium_executable_path,
                args=list(self.chromium_args),
            )
        # Bundled browsers need no extra flags locally
        return BrowserProfile(environment=DEVELOPMENT, executable_path=self.chromium_executable_path)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the process-wide Settings instance.

    Used as a FastAPI dependency so tests can swap it with
    ``app.dependency_overrides``.
    """
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
