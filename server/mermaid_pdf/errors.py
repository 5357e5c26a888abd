"""
Conversion errors

Every failure the service reports to a caller is a ConversionError subclass.
The HTTP layer maps each one to a status code through ``status_code``.
"""

from typing import Optional


class ConversionError(Exception):
    """Base class for all conversion failures"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MissingInputError(ConversionError):
    """Neither an uploaded file nor inline code was supplied"""

    status_code = 400


class InvalidUploadError(ConversionError):
    """Uploaded file has the wrong extension or cannot be decoded"""

    status_code = 400


class SyntaxInvalidError(ConversionError):
    """Mermaid rejected the diagram source"""

    status_code = 400


class RenderMissingError(ConversionError):
    """Export was attempted with no rendered SVG present"""


class ExternalToolError(ConversionError):
    """
    Subprocess or browser automation failure

    Carries the tool's exit code and diagnostic output when they exist so the
    caller sees what the tool itself reported.
    """

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        if stderr:
            message = f"{message}. Stderr: {stderr.strip()}"
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ConversionTimeoutError(ConversionError):
    """The conversion exceeded its wall-clock budget and was killed"""

    status_code = 504


class ExportTransformError(ConversionError):
    """The PDF library rejected the normalized SVG tree"""
