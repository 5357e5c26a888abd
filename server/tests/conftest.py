"""
Pytest configuration and fixtures for the Mermaid to PDF test suite.
"""

import pytest
from pathlib import Path
from typing import Dict, List, Optional

from bs4 import BeautifulSoup, Tag
from fastapi.testclient import TestClient

# Add server directory to Python path
import sys
server_dir = Path(__file__).parent.parent
sys.path.insert(0, str(server_dir))

from mermaid_pdf.__main__ import app
from mermaid_pdf.config import Settings, get_settings
from mermaid_pdf.internal.svg_normalize import (
    SNAPSHOT_PROPERTIES,
    BoundingBox,
    RenderedDiagram,
    parse_style_snapshot,
)


# Flowchart rendered with plain SVG labels
PLAIN_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" id="mermaid-export" width="100%" '
    'viewBox="-8 -8 96 136" style="max-width: 96px;">'
    '<style>#mermaid-export .node rect{fill:#ECECFF;stroke:#9370DB;}</style>'
    '<g class="root">'
    '<g class="nodes">'
    '<g class="node default" id="flowchart-A-0" transform="translate(40, 20)">'
    '<rect class="basic label-container" x="-40" y="-20" width="80" height="40"/>'
    '<g class="label"><text y="5">A</text></g>'
    '</g>'
    '</g>'
    '<path class="flowchart-link" d="M40,40L40,120" marker-end="url(#mermaid-export_flowchart-pointEnd)"/>'
    '</g>'
    '</svg>'
)

# Flowchart rendered with HTML labels: one real label, one whitespace-only edge label
RICH_TEXT_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" id="mermaid-export" viewBox="0 0 200 100">'
    '<g class="nodes">'
    '<g class="node">'
    '<rect x="0" y="0" width="120" height="40"/>'
    '<g class="label">'
    '<foreignObject x="10" y="10" width="100" height="20">'
    '<div xmlns="http://www.w3.org/1999/xhtml" style="display: inline-block;">'
    '<span class="nodeLabel">Start</span>'
    '</div>'
    '</foreignObject>'
    '</g>'
    '</g>'
    '<g class="edgeLabel">'
    '<g class="label">'
    '<foreignObject width="0" height="0">'
    '<div xmlns="http://www.w3.org/1999/xhtml"><span class="edgeLabel">   </span></div>'
    '</foreignObject>'
    '</g>'
    '</g>'
    '</g>'
    '</svg>'
)

# Path of the <div> inside the first foreignObject of RICH_TEXT_SVG
RICH_TEXT_LABEL_PATH = "0.0.1.0.0"


def capture_snapshot(svg_markup: str,
                     styles_by_path: Optional[Dict[str, Dict[str, str]]] = None,
                     markers_by_path: Optional[Dict[str, Dict[str, str]]] = None,
                     default_style: Optional[Dict[str, str]] = None) -> List[dict]:
    """
    Produce style entries shaped like the browser capture script's output.

    Every element gets ``default_style`` unless ``styles_by_path`` names it.
    Unlisted properties are reported as "none" or "normal" the way
    getComputedStyle reports unset values.
    """
    styles_by_path = styles_by_path or {}
    markers_by_path = markers_by_path or {}
    default_style = default_style or {}

    soup = BeautifulSoup(svg_markup, "xml")
    root = soup.find("svg")
    entries = []

    def walk(element: Tag, path: List[int]):
        key = ".".join(str(index) for index in path)
        properties = {prop: "normal" if prop.startswith("font-weight") else "none" for prop in SNAPSHOT_PROPERTIES}
        properties.update(default_style)
        properties.update(styles_by_path.get(key, {}))
        entries.append({
            "path": key,
            "tag": element.name,
            "properties": properties,
            "markers": markers_by_path.get(key, {}),
        })
        children = [child for child in element.children if isinstance(child, Tag)]
        for index, child in enumerate(children):
            walk(child, path + [index])

    walk(root, [])
    return entries


def make_rendered(svg_markup: str, bbox: BoundingBox = BoundingBox(0, 0, 200, 100), **snapshot_kwargs) -> RenderedDiagram:
    return RenderedDiagram(
        svg=svg_markup,
        bbox=bbox,
        styles=parse_style_snapshot(capture_snapshot(svg_markup, **snapshot_kwargs)),
    )


@pytest.fixture
def temp_dir(tmp_path):
    """Isolated directory for conversion temp files."""
    conversion_dir = tmp_path / "conversions"
    conversion_dir.mkdir()
    return conversion_dir


@pytest.fixture
def test_settings(temp_dir):
    """Settings pointing every temp file at the test directory."""
    return Settings(
        temp_dir=str(temp_dir),
        mmdc_command="mmdc",
        conversion_timeout=5,
        render_timeout_ms=1000,
    )


@pytest.fixture
def client(test_settings):
    """Create a test client for FastAPI application."""
    app.dependency_overrides[get_settings] = lambda: test_settings
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def plain_rendered():
    """Rendered diagram without any foreignObject labels."""
    return make_rendered(
        PLAIN_SVG,
        bbox=BoundingBox(0, 0, 80, 120),
        default_style={"fill": "rgb(0, 0, 0)", "font-family": "arial, sans-serif", "font-size": "16px"},
    )


@pytest.fixture
def rich_text_rendered():
    """Rendered diagram with HTML labels and a known label style."""
    return make_rendered(
        RICH_TEXT_SVG,
        bbox=BoundingBox(0, 0, 200, 100),
        styles_by_path={
            RICH_TEXT_LABEL_PATH: {
                "font-size": "16px",
                "font-family": '"trebuchet ms", verdana, arial, sans-serif',
                "color": "rgb(51, 51, 51)",
            },
        },
    )
