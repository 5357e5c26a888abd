from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ===================================================================
# Renderer configuration
# ===================================================================

class RenderConfig(BaseModel):
    """
    Mermaid settings for a single render call

    Why not call mermaid.initialize once at startup?
    - Each render gets its own browser page, so configuration travels with
      the call instead of living in shared state
    - Requests can override the theme without affecting each other

    Labels default to plain SVG text; any foreignObject labels that remain
    are rewritten by the normalizer before export.
    """
    model_config = ConfigDict(extra="forbid")

    theme: str = "default"
    security_level: Literal["strict", "loose", "antiscript", "sandbox"] = "loose"
    font_family: Optional[str] = None
    flowchart_html_labels: bool = False
    class_html_labels: bool = False
    sequence_use_max_width: bool = False
    journey_use_max_width: bool = False
    pie_text_position: float = Field(default=0.5, ge=0, le=1)

    def to_mermaid_options(self) -> Dict[str, Any]:
        """Options object handed to ``mermaid.initialize``"""
        options: Dict[str, Any] = {
            "startOnLoad": False,
            "theme": self.theme,
            "securityLevel": self.security_level,
            "flowchart": {"htmlLabels": self.flowchart_html_labels},
            "class": {"htmlLabels": self.class_html_labels},
            "sequence": {"useMaxWidth": self.sequence_use_max_width},
            "journey": {"useMaxWidth": self.journey_use_max_width},
            "pie": {"textPosition": self.pie_text_position},
        }
        if self.font_family:
            options["fontFamily"] = self.font_family
        return options


# ===================================================================
# Request / response schemas
# ===================================================================

class DiagramRequest(BaseModel):
    """JSON body carrying diagram source"""
    code: Optional[str] = None
    config: RenderConfig = Field(default_factory=RenderConfig)


class GeneratePdfRequest(DiagramRequest):
    """
    Body of /api/generate-pdf

    engine:
    - vector: normalized SVG exported by WeasyPrint (default)
    - browser: Chromium prints the rendered page directly
    """
    engine: Literal["vector", "browser"] = "vector"
    filename: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    environment: str
