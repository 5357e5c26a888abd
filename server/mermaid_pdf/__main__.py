from contextlib import asynccontextmanager
import logging
from typing import Optional, Tuple

import uvicorn
from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from mermaid_pdf.config import Settings, get_settings
from mermaid_pdf.errors import ConversionError, MissingInputError
from mermaid_pdf.internal.cli_convert import MermaidCliConverter, sweep_stale_files
from mermaid_pdf.internal.mermaid_render import MermaidRenderer
from mermaid_pdf.internal.pdf_export import VectorPdfExporter
from mermaid_pdf.internal.source import (
    content_disposition,
    decode_upload,
    download_filename,
    extract_diagram_source,
    validate_upload_name,
)
from mermaid_pdf.internal.svg_normalize import normalize
from mermaid_pdf.schemas import (
    DiagramRequest,
    GeneratePdfRequest,
    HealthResponse,
    ValidationResult,
)

settings = get_settings()

# Configure logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """
    Application lifecycle management - clear conversion leftovers on startup

    A request killed by the host's execution limit never reaches its own
    cleanup, so stale temp files are swept here.
    """
    try:
        cleaned_count = sweep_stale_files(settings.temp_dir, settings.temp_file_max_age_hours)
        logger.info(f"Cleaned up {cleaned_count} stale conversion files on startup")
    except Exception as e:
        logger.warning(f"Temp file cleanup on startup failed: {str(e)}")
    yield


app = FastAPI(title="Mermaid to PDF", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ===================================================================
# Dependencies
# ===================================================================

def get_renderer(settings: Settings = Depends(get_settings)) -> MermaidRenderer:
    return MermaidRenderer(settings)


def get_cli_converter(settings: Settings = Depends(get_settings)) -> MermaidCliConverter:
    return MermaidCliConverter(settings)


def get_exporter() -> VectorPdfExporter:
    return VectorPdfExporter()


# ===================================================================
# Helpers
# ===================================================================

def _pdf_response(pdf_bytes: bytes, filename: str) -> Response:
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": content_disposition(filename)},
    )


def _http_error(error: ConversionError) -> HTTPException:
    if error.status_code >= 500:
        logger.error(f"Conversion failed: {error.message}")
    else:
        logger.info(f"Rejected request: {error.message}")
    return HTTPException(status_code=error.status_code, detail=error.message)


def _require_code(code: Optional[str]) -> str:
    source = extract_diagram_source(code or "")
    if not source.strip():
        raise MissingInputError("Mermaid code is required")
    return source


async def _read_convert_input(file: Optional[UploadFile], code: Optional[str]) -> Tuple[str, Optional[str]]:
    """
    Resolve the diagram source of a form submission.

    An uploaded file wins over inline code. Returns the source and the
    upload's filename, if any.
    """
    if file is not None and file.filename:
        validate_upload_name(file.filename)
        text = decode_upload(await file.read())
        source = extract_diagram_source(text)
        if not source.strip():
            raise MissingInputError("Uploaded file contains no mermaid code")
        return source, file.filename

    if code and code.strip():
        return extract_diagram_source(code), None

    raise MissingInputError("No mermaid code or file provided")


# ===================================================================
# Conversion endpoints
# ===================================================================

@app.post("/api/convert")
async def convert_diagram(
    file: Optional[UploadFile] = File(None),
    code: Optional[str] = Form(None),
    converter: MermaidCliConverter = Depends(get_cli_converter),
):
    """
    Convert an uploaded .mmd/.md file or inline code to PDF with mermaid-cli

    Args:
        file: Uploaded diagram file
        code: Inline diagram source, used when no file is sent
        converter: mmdc wrapper

    Returns:
        PDF attachment
    """
    try:
        source, upload_name = await _read_convert_input(file, code)
        logger.info(f"Starting CLI conversion ({len(source)} chars)...")

        pdf_bytes = await converter.convert(source)
        return _pdf_response(pdf_bytes, download_filename(upload_name))

    except HTTPException:
        raise
    except ConversionError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Conversion error: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Internal server error during conversion: {str(e)}")


@app.post("/api/generate-pdf")
async def generate_pdf(
    request: GeneratePdfRequest,
    settings: Settings = Depends(get_settings),
    renderer: MermaidRenderer = Depends(get_renderer),
    exporter: VectorPdfExporter = Depends(get_exporter),
):
    """
    Render diagram source in the browser and export it as a fitted PDF

    The vector engine normalizes the rendered SVG and exports it with
    WeasyPrint; the browser engine lets Chromium print the page.
    """
    try:
        source = _require_code(request.code)
        logger.info(f"Starting PDF generation with the {request.engine} engine...")

        if request.engine == "browser":
            pdf_bytes = await renderer.print_pdf(source, request.config, settings.page_padding)
        else:
            rendered = await renderer.render(source, request.config)
            normalized = await run_in_threadpool(normalize, rendered, settings.page_padding)
            pdf_bytes = await run_in_threadpool(exporter.export, normalized)

        logger.info(f"PDF generation successful: {len(pdf_bytes)} bytes")
        return _pdf_response(pdf_bytes, download_filename(request.filename))

    except HTTPException:
        raise
    except ConversionError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"PDF generation error: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Failed to generate PDF: {str(e)}")


@app.post("/api/render-svg")
async def render_svg(
    request: DiagramRequest,
    settings: Settings = Depends(get_settings),
    renderer: MermaidRenderer = Depends(get_renderer),
):
    """Return the normalized, export-ready SVG with its page layout in headers"""
    try:
        source = _require_code(request.code)
        rendered = await renderer.render(source, request.config)
        normalized = await run_in_threadpool(normalize, rendered, settings.page_padding)
        layout = normalized.layout

        return Response(
            content=normalized.svg,
            media_type="image/svg+xml",
            headers={
                "X-Page-Width": f"{layout.width:g}",
                "X-Page-Height": f"{layout.height:g}",
                "X-Page-Orientation": layout.orientation,
            },
        )

    except HTTPException:
        raise
    except ConversionError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"SVG render error: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Failed to render SVG: {str(e)}")


@app.post("/api/validate")
async def validate_diagram(
    request: DiagramRequest,
    renderer: MermaidRenderer = Depends(get_renderer),
) -> ValidationResult:
    """Check diagram syntax so a client can block conversion early"""
    try:
        source = _require_code(request.code)
        return await renderer.validate(source, request.config)

    except HTTPException:
        raise
    except ConversionError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Validation error: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Failed to validate diagram: {str(e)}")


@app.get("/health")
def health(settings: Settings = Depends(get_settings)) -> HealthResponse:
    return HealthResponse(status="ok", environment=settings.environment)


if __name__ == "__main__":
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
