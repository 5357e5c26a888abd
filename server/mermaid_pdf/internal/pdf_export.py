"""
Vector PDF Exporter

Places a normalized SVG on a single page sized to the diagram and renders it
to PDF with WeasyPrint.
"""

import base64
import html
import logging
from typing import Optional

from bs4 import BeautifulSoup

from mermaid_pdf.errors import ExportTransformError, RenderMissingError
from mermaid_pdf.internal.svg_normalize import (
    BoundingBox,
    NormalizedDiagram,
    PageLayout,
    find_svg_root,
    format_number,
)

logger = logging.getLogger(__name__)

SVG_NAMESPACE = "http://www.w3.org/2000/svg"


class VectorPdfExporter:
    """Normalized SVG -> one-page PDF"""

    def __init__(self, title: str = "Mermaid Diagram"):
        self.title = title

    def export(self, normalized: NormalizedDiagram, title: Optional[str] = None) -> bytes:
        """
        Export a normalized diagram to PDF bytes.

        Args:
            normalized: Style-inlined SVG and its page layout
            title: Document title stored in the PDF metadata

        Returns:
            PDF bytes
        """
        layout = normalized.layout
        logger.info(
            f"Exporting PDF: page {layout.width:g}x{layout.height:g}pt {layout.orientation}, "
            f"placement {layout.placement}"
        )

        svg_markup = self._fit_to_bbox(normalized.svg, layout.bbox)
        document_html = self._create_pdf_html(svg_markup, layout, title or self.title)

        try:
            pdf_bytes = self._write_pdf(document_html)
        except Exception as e:
            logger.error(f"PDF generation failed: {str(e)}")
            raise ExportTransformError(f"Failed to export PDF: {str(e)}")

        if not pdf_bytes:
            raise ExportTransformError("Failed to export PDF: exporter produced no output")

        logger.info(f"PDF generated successfully: {len(pdf_bytes)} bytes")
        return pdf_bytes

    def _write_pdf(self, document_html: str) -> bytes:
        # Imported here so the service starts on hosts without Pango/Cairo
        from weasyprint import HTML

        return HTML(string=document_html).write_pdf()

    def _fit_to_bbox(self, svg_markup: str, bbox: BoundingBox) -> str:
        """
        Make the SVG's viewport show exactly the visible bounding box.

        Mermaid's own width="100%" and max-width style would otherwise
        decide the drawing's size inside the placement box.
        """
        soup = BeautifulSoup(svg_markup, "xml")
        try:
            svg_element = find_svg_root(soup)
        except RenderMissingError as e:
            raise ExportTransformError(f"Failed to export PDF: {e.message}")

        svg_element["viewBox"] = " ".join(
            format_number(value) for value in (bbox.x, bbox.y, bbox.width, bbox.height)
        )
        svg_element["width"] = format_number(bbox.width)
        svg_element["height"] = format_number(bbox.height)
        svg_element["preserveAspectRatio"] = "xMidYMid meet"
        if not svg_element.get("xmlns"):
            svg_element["xmlns"] = SVG_NAMESPACE
        if svg_element.get("style"):
            del svg_element["style"]

        return str(svg_element)

    def _create_pdf_html(self, svg_markup: str, layout: PageLayout, title: str) -> str:
        """
        Create the single-page HTML document handed to WeasyPrint.

        Page dimensions are in points; the diagram sits at (margin, margin)
        with the bounding box's size.
        """
        x, y, width, height = layout.placement
        encoded_svg = base64.b64encode(svg_markup.encode("utf-8")).decode("ascii")

        return f"""
        <!DOCTYPE html>
        <html lang="en">
        <head>
            <meta charset="UTF-8">
            <title>{html.escape(title)}</title>
            <style>
                @page {{
                    size: {format_number(layout.width)}pt {format_number(layout.height)}pt;
                    margin: 0;
                }}
                html, body {{
                    margin: 0;
                    padding: 0;
                    background: white;
                }}
                img.diagram {{
                    position: absolute;
                    left: {format_number(x)}pt;
                    top: {format_number(y)}pt;
                    width: {format_number(width)}pt;
                    height: {format_number(height)}pt;
                }}
            </style>
        </head>
        <body>
            <img class="diagram" alt="" src="data:image/svg+xml;base64,{encoded_svg}">
        </body>
        </html>
        """
