"""
SVG Export Normalizer

Turns a rendered Mermaid SVG into a self-contained tree for vector PDF export:
- foreignObject labels become plain <text> nodes
- cascade-resolved styles are written onto each element as presentation
  attributes, so the tree renders the same without the page's style sheets

Computed styles are captured from the live browser tree in one pass
(see mermaid_render.py) and keyed by structural path. This module applies
that snapshot to a detached copy and never touches the live tree.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from bs4 import BeautifulSoup, Tag

from mermaid_pdf.errors import RenderMissingError

logger = logging.getLogger(__name__)

# Properties inlined from computed style onto every element
STYLE_PROPERTIES = (
    "fill",
    "stroke",
    "stroke-width",
    "font-family",
    "font-size",
    "font-weight",
    "opacity",
    "text-anchor",
    "dominant-baseline",
    "alignment-baseline",
    "text-decoration",
    "stroke-dasharray",
)

# Set as explicit attributes by Mermaid, so copied from attributes, not CSS
MARKER_ATTRIBUTES = ("marker-start", "marker-end", "marker-mid")

# What the browser captures per element; color feeds rich-text replacement
SNAPSHOT_PROPERTIES = STYLE_PROPERTIES + ("color",)

SKIPPED_VALUES = frozenset({"", "none", "auto", "normal"})

DEFAULT_FONT_SIZE = "14"
DEFAULT_FONT_FAMILY = "arial, sans-serif"
DEFAULT_TEXT_FILL = "#333333"
DEFAULT_PADDING = 40.0

RICH_TEXT_TAG = "foreignobject"
LABEL_TAGS = ["div", "span", "p"]

NUMBER_PATTERN = re.compile(r"\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)")

Path = Tuple[int, ...]


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BoundingBox":
        return cls(
            x=float(data.get("x") or 0),
            y=float(data.get("y") or 0),
            width=float(data.get("width") or 0),
            height=float(data.get("height") or 0),
        )


@dataclass(frozen=True)
class ComputedStyle:
    tag: str
    properties: Dict[str, str] = field(default_factory=dict)
    markers: Dict[str, str] = field(default_factory=dict)


StyleSnapshot = Dict[Path, ComputedStyle]


@dataclass(frozen=True)
class RenderedDiagram:
    """Serialized live SVG plus what the browser measured while it was attached"""
    svg: str
    bbox: BoundingBox
    styles: StyleSnapshot = field(default_factory=dict)


@dataclass(frozen=True)
class PageLayout:
    width: float
    height: float
    margin: float
    orientation: str
    bbox: BoundingBox

    @property
    def placement(self) -> Tuple[float, float, float, float]:
        """(x, y, width, height) of the diagram on the page"""
        return (self.margin, self.margin, self.bbox.width, self.bbox.height)


@dataclass(frozen=True)
class NormalizedDiagram:
    svg: str
    layout: PageLayout
    rich_text_replaced: int = 0
    rich_text_removed: int = 0


def parse_style_snapshot(entries: Optional[Iterable[Mapping[str, Any]]]) -> StyleSnapshot:
    """
    Convert the browser's per-element style entries into a StyleSnapshot.

    Each entry looks like
    {"path": "0.2.1", "tag": "rect", "properties": {...}, "markers": {...}}
    where path lists element-child indices from the SVG root ("" is the root).
    """
    snapshot: StyleSnapshot = {}
    for entry in entries or []:
        raw_path = str(entry.get("path") or "")
        path = tuple(int(part) for part in raw_path.split(".")) if raw_path else ()
        snapshot[path] = ComputedStyle(
            tag=str(entry.get("tag") or "").lower(),
            properties={k: str(v) for k, v in (entry.get("properties") or {}).items()},
            markers={k: str(v) for k, v in (entry.get("markers") or {}).items() if v},
        )
    return snapshot


def compute_page_layout(bbox: BoundingBox, padding: float = DEFAULT_PADDING) -> PageLayout:
    """Page sized to the visible bounding box plus padding, split evenly per side"""
    width = bbox.width + padding
    height = bbox.height + padding
    return PageLayout(
        width=width,
        height=height,
        margin=padding / 2,
        orientation="landscape" if width > height else "portrait",
        bbox=bbox,
    )


def _local_name(element: Tag) -> str:
    return element.name.split(":")[-1].lower()


def _element_children(element: Tag) -> List[Tag]:
    return [child for child in element.children if isinstance(child, Tag)]


def _walk(element: Tag, path: Path = ()) -> Iterator[Tuple[Path, Tag]]:
    yield path, element
    for index, child in enumerate(_element_children(element)):
        yield from _walk(child, path + (index,))


def _is_rich_text(element: Tag) -> bool:
    return isinstance(element, Tag) and _local_name(element) == RICH_TEXT_TAG


def _parse_number(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    match = NUMBER_PATTERN.match(str(value))
    if not match:
        return default
    return float(match.group(1))


def format_number(value: float) -> str:
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def find_svg_root(soup: BeautifulSoup) -> Tag:
    root = soup.find(lambda tag: _local_name(tag) == "svg")
    if root is None:
        raise RenderMissingError("SVG element not found. Please ensure the diagram is rendered.")
    return root


def _apply_computed_style(element: Tag, computed: ComputedStyle) -> None:
    for prop in STYLE_PROPERTIES:
        value = (computed.properties.get(prop) or "").strip()
        if value in SKIPPED_VALUES:
            continue
        element[prop] = value

    for attr in MARKER_ATTRIBUTES:
        value = computed.markers.get(attr)
        if value:
            element[attr] = value


def inline_styles(root: Tag, snapshot: StyleSnapshot, path: Path = ()) -> int:
    """
    Write snapshot styles onto ``root`` and its descendants.

    An element is styled only when its path exists in the snapshot and the
    recorded tag matches. Otherwise the element and its subtree are left
    untouched.

    Returns:
        Number of elements styled
    """
    computed = snapshot.get(path)
    if computed is None or computed.tag != _local_name(root):
        logger.debug(f"Style snapshot does not line up at path {path or 'root'}, skipping subtree")
        return 0

    _apply_computed_style(root, computed)
    styled = 1
    for index, child in enumerate(_element_children(root)):
        styled += inline_styles(child, snapshot, path + (index,))
    return styled


def _label_value(label_style: Optional[ComputedStyle], prop: str, default: str) -> str:
    if label_style is None:
        return default
    value = (label_style.properties.get(prop) or "").strip()
    return default if value in SKIPPED_VALUES else value


def _synthesize_text(soup: BeautifulSoup, container: Tag, content: str,
                     label_style: Optional[ComputedStyle]) -> Tag:
    x = _parse_number(container.get("x", "0"), 0.0)
    y = _parse_number(container.get("y", "0"), 0.0)
    width = _parse_number(container.get("width", "100"), 100.0)
    height = _parse_number(container.get("height", "20"), 20.0)

    font_size = _label_value(label_style, "font-size", DEFAULT_FONT_SIZE).replace("px", "").strip() or DEFAULT_FONT_SIZE
    font_family = _label_value(label_style, "font-family", DEFAULT_FONT_FAMILY)
    fill = _label_value(label_style, "color", DEFAULT_TEXT_FILL)

    text = soup.new_tag("text")
    text["x"] = format_number(x + width / 2)
    text["y"] = format_number(y + height / 2 + _parse_number(font_size, 14.0) / 3)
    text["text-anchor"] = "middle"
    text["dominant-baseline"] = "middle"
    text["fill"] = fill
    text["font-size"] = font_size
    text["font-family"] = font_family
    text.string = content
    return text


def replace_rich_text(soup: BeautifulSoup, root: Tag, snapshot: StyleSnapshot,
                      paths: Mapping[int, Path]) -> Tuple[int, int]:
    """
    Replace every foreignObject under ``root`` with a centered <text> node.

    Empty containers are deleted. Label styles are resolved for all
    containers before anything is mutated, so deletions cannot shift the
    paths of later lookups.

    Args:
        soup: Document that owns ``root``, used to create new nodes
        root: SVG root element
        snapshot: Computed styles keyed by path
        paths: Element id -> path, recorded on the unmodified tree

    Returns:
        (replaced, removed) counts
    """
    containers = [
        element for element in root.find_all(_is_rich_text)
        if element.find_parent(_is_rich_text) is None
    ]

    plans = []
    for container in containers:
        label = container.find(LABEL_TAGS)
        label_style = None
        if label is not None and id(label) in paths:
            label_style = snapshot.get(paths[id(label)])
        plans.append((container, label_style))

    replaced = removed = 0
    for container, label_style in plans:
        content = container.get_text().strip()
        if not content:
            container.decompose()
            removed += 1
            continue

        container.replace_with(_synthesize_text(soup, container, content, label_style))
        replaced += 1
        logger.debug(f"Replaced foreignObject with text: '{content}'")

    return replaced, removed


def normalize(rendered: RenderedDiagram, padding: float = DEFAULT_PADDING) -> NormalizedDiagram:
    """
    Build the export-ready copy of a rendered diagram.

    Args:
        rendered: Serialized live SVG, its bounding box and style snapshot
        padding: Total page padding; half of it becomes the margin on each side

    Returns:
        NormalizedDiagram with no foreignObject nodes and inlined styles
    """
    soup = BeautifulSoup(rendered.svg, "xml")
    root = find_svg_root(soup)

    # Paths must be recorded before any node is replaced or removed
    paths = {id(element): path for path, element in _walk(root)}

    styled = inline_styles(root, rendered.styles)
    replaced, removed = replace_rich_text(soup, root, rendered.styles, paths)
    layout = compute_page_layout(rendered.bbox, padding)

    logger.info(
        f"✅ Normalized SVG: {styled} elements styled, {replaced} labels converted, "
        f"{removed} empty labels removed, page {layout.width:g}x{layout.height:g} {layout.orientation}"
    )

    return NormalizedDiagram(
        svg=str(root),
        layout=layout,
        rich_text_replaced=replaced,
        rich_text_removed=removed,
    )
