"""
Mermaid Diagram Renderer

Renders Mermaid source to SVG in headless Chromium via Playwright, and
captures what the export path needs while the SVG is still attached to the
page: the serialized tree, its bounding box and every element's computed
style.
"""

import logging
import math
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import Page, async_playwright

from mermaid_pdf.config import Settings
from mermaid_pdf.errors import (
    ConversionError,
    ExternalToolError,
    RenderMissingError,
    SyntaxInvalidError,
)
from mermaid_pdf.internal.svg_normalize import (
    DEFAULT_PADDING,
    MARKER_ATTRIBUTES,
    SNAPSHOT_PROPERTIES,
    BoundingBox,
    RenderedDiagram,
    parse_style_snapshot,
)
from mermaid_pdf.schemas import RenderConfig, ValidationResult

logger = logging.getLogger(__name__)

CONTAINER_ID = "mermaid-container"
DIAGRAM_ID = "mermaid-export"
SVG_SELECTOR = f"#{CONTAINER_ID} svg"

# Parses first so a syntax error is reported distinctly from a render failure
RENDER_SCRIPT = """
async ({ source, options, containerId, diagramId, render }) => {
    mermaid.initialize(options);
    try {
        await mermaid.parse(source);
    } catch (e) {
        return { valid: false, error: String((e && e.message) || e) };
    }
    if (render) {
        const { svg } = await mermaid.render(diagramId, source);
        document.getElementById(containerId).innerHTML = svg;
    }
    return { valid: true, error: null };
}
"""

# One pass over the live tree: serialized markup, geometry, computed styles
CAPTURE_SCRIPT = """
({ selector, properties, markers }) => {
    const svg = document.querySelector(selector);
    if (!svg) {
        return null;
    }
    const styles = [];
    const walk = (el, path) => {
        const computed = window.getComputedStyle(el);
        const values = {};
        for (const prop of properties) {
            values[prop] = computed.getPropertyValue(prop);
        }
        const markerValues = {};
        for (const attr of markers) {
            const value = el.getAttribute(attr);
            if (value) {
                markerValues[attr] = value;
            }
        }
        styles.push({ path: path.join('.'), tag: el.localName, properties: values, markers: markerValues });
        Array.from(el.children).forEach((child, index) => walk(child, path.concat([index])));
    };
    walk(svg, []);
    const box = svg.getBBox();
    const rect = svg.getBoundingClientRect();
    return {
        svg: new XMLSerializer().serializeToString(svg),
        bbox: { x: box.x, y: box.y, width: box.width, height: box.height },
        rect: { x: rect.x, y: rect.y, width: rect.width, height: rect.height },
        styles,
    };
}
"""


def build_page_html(mermaid_js_url: str, margin: float) -> str:
    """HTML page that hosts a single Mermaid diagram"""
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <meta charset="UTF-8">
        <script src="{mermaid_js_url}"></script>
        <style>
            * {{ margin: 0; padding: 0; box-sizing: border-box; }}
            body {{
                background: white;
                display: flex;
                justify-content: center;
                align-items: flex-start;
                padding: {margin:g}px;
            }}
            #{CONTAINER_ID} {{
                display: inline-block;
            }}
        </style>
    </head>
    <body>
        <div id="{CONTAINER_ID}"></div>
    </body>
    </html>
    """


class MermaidRenderer:
    """Playwright-backed Mermaid renderer; one browser per call"""

    def __init__(self, settings: Settings):
        self.settings = settings

    @asynccontextmanager
    async def _open_page(self, padding: float = DEFAULT_PADDING) -> AsyncIterator[Page]:
        """
        Launch a browser, load Mermaid into a fresh page and yield it.

        The browser is closed on every exit path. Playwright failures become
        ExternalToolError; ConversionError subclasses pass through.
        """
        launch_options = self.settings.browser_profile.playwright_launch_options()
        try:
            async with async_playwright() as p:
                browser = await p.chromium.launch(**launch_options)
                try:
                    page = await browser.new_page()
                    await page.set_content(
                        build_page_html(self.settings.mermaid_js_url, padding / 2),
                        wait_until="networkidle",
                    )
                    await page.wait_for_function(
                        "() => window.mermaid !== undefined",
                        timeout=self.settings.render_timeout_ms,
                    )
                    yield page
                finally:
                    await browser.close()
        except ConversionError:
            raise
        except PlaywrightError as e:
            logger.error(f"Browser automation failed: {str(e)}")
            raise ExternalToolError(f"Browser automation failed: {str(e)}")

    async def _run_mermaid(self, page: Page, source: str, config: RenderConfig, render: bool) -> Dict[str, Any]:
        return await page.evaluate(
            RENDER_SCRIPT,
            {
                "source": source,
                "options": config.to_mermaid_options(),
                "containerId": CONTAINER_ID,
                "diagramId": DIAGRAM_ID,
                "render": render,
            },
        )

    async def _render_and_capture(self, page: Page, source: str, config: RenderConfig) -> Dict[str, Any]:
        result = await self._run_mermaid(page, source, config, render=True)
        if not result.get("valid"):
            raise SyntaxInvalidError(f"Syntax error in Mermaid code: {result.get('error')}")

        try:
            await page.wait_for_selector(SVG_SELECTOR, timeout=self.settings.render_timeout_ms)
        except PlaywrightTimeoutError:
            raise RenderMissingError("Mermaid produced no SVG within the render timeout")

        captured = await page.evaluate(
            CAPTURE_SCRIPT,
            {
                "selector": SVG_SELECTOR,
                "properties": list(SNAPSHOT_PROPERTIES),
                "markers": list(MARKER_ATTRIBUTES),
            },
        )
        if not captured or not captured.get("svg"):
            raise RenderMissingError("SVG element not found. Please ensure the diagram is rendered.")
        return captured

    async def validate(self, source: str, config: Optional[RenderConfig] = None) -> ValidationResult:
        """
        Check Mermaid syntax without rendering.

        Args:
            source: Diagram source
            config: Renderer configuration for this call

        Returns:
            ValidationResult with the parser's message when invalid
        """
        async with self._open_page() as page:
            result = await self._run_mermaid(page, source, config or RenderConfig(), render=False)
        return ValidationResult(valid=bool(result.get("valid")), error=result.get("error"))

    async def render(self, source: str, config: Optional[RenderConfig] = None) -> RenderedDiagram:
        """
        Render Mermaid source and capture the live SVG.

        Args:
            source: Diagram source
            config: Renderer configuration for this call

        Returns:
            RenderedDiagram with serialized SVG, bounding box and style snapshot
        """
        logger.info(f"Rendering Mermaid diagram ({len(source)} chars)...")
        async with self._open_page() as page:
            captured = await self._render_and_capture(page, source, config or RenderConfig())

        rendered = RenderedDiagram(
            svg=captured["svg"],
            bbox=BoundingBox.from_dict(captured.get("bbox") or {}),
            styles=parse_style_snapshot(captured.get("styles")),
        )
        logger.info(
            f"Mermaid diagram rendered - SVG length: {len(rendered.svg)}, "
            f"bbox {rendered.bbox.width:g}x{rendered.bbox.height:g}"
        )
        return rendered

    async def print_pdf(self, source: str, config: Optional[RenderConfig] = None,
                        padding: float = DEFAULT_PADDING) -> bytes:
        """
        Render the diagram and let Chromium print the page to PDF.

        The page is sized to the SVG's on-screen box plus padding.

        Returns:
            PDF bytes
        """
        logger.info("Printing Mermaid diagram with Chromium...")
        async with self._open_page(padding) as page:
            captured = await self._render_and_capture(page, source, config or RenderConfig())
            rect = captured.get("rect") or {}
            width = math.ceil(float(rect.get("width") or 0) + padding)
            height = math.ceil(float(rect.get("height") or 0) + padding)

            pdf_bytes = await page.pdf(
                width=f"{width}px",
                height=f"{height}px",
                print_background=True,
                page_ranges="1",
            )

        logger.info(f"Chromium PDF generated: {len(pdf_bytes)} bytes, page {width}x{height}px")
        return pdf_bytes
