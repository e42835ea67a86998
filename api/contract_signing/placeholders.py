"""
Placeholder scanning for DOCX templates.

Recognised inside the paragraph text of ``word/document.xml`` and the
header/footer parts:

    {name}            plain substitution
    {#name# label}    one option of the single-choice field ``name``
    {@name}           mirror field, bound to the dropdown scanned just before it

Word freely splits a paragraph into runs (formatting changes, spell-check
marks, partial edits), so tags are matched against the joined ``<w:t>`` text
of each paragraph rather than against the serialized XML. All text parts are
scanned as one stream in package order, so a mirror in a footer binds to a
dropdown in the body if that was the last one seen.
"""

import re
import zipfile
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from io import BytesIO
from typing import Dict, Iterator, List, Optional, Tuple

from lxml import etree

from .errors import RenderErrorDetail, TemplateRenderError

TEXT_PART_RE = re.compile(r"^word/(document|header\d*|footer\d*)\.xml$")

NAME = r"[A-Za-z0-9_]+"
TOKEN_RE = re.compile(
    r"\{#(?P<dropdown>" + NAME + r")#\s*(?P<label>[^}]*)\}"
    r"|\{@(?P<mirror>" + NAME + r")\}"
    r"|\{(?P<simple>" + NAME + r")\}"
)

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
W_P = f"{{{W_NS}}}p"
W_T = f"{{{W_NS}}}t"
XML_SPACE = "{http://www.w3.org/XML/1998/namespace}space"

_BRACE_RE = re.compile(r"[{}]")
_PARSER = etree.XMLParser(resolve_entities=False, no_network=True)


@dataclass
class TemplateMetadata:
    variable_names: List[str] = field(default_factory=list)
    dropdown_options: Dict[str, List[str]] = field(default_factory=dict)
    dropdown_mirrors: Dict[str, str] = field(default_factory=dict)
    mirror_sources: Dict[str, str] = field(default_factory=dict)


class ParagraphText:
    """
    The ``<w:t>`` nodes that belong to one paragraph and their joined text.

    Text boxes nest paragraphs inside runs; their nodes belong to the inner
    paragraph only.
    """

    def __init__(self, paragraph):
        self.nodes = [
            t for t in paragraph.iter(W_T)
            if next(t.iterancestors(W_P), None) is paragraph
        ]
        self.starts = []
        pieces = []
        offset = 0
        for node in self.nodes:
            self.starts.append(offset)
            pieces.append(node.text or "")
            offset += len(node.text or "")
        self.text = "".join(pieces)

    def _first(self, offset: int) -> Tuple[int, int]:
        index = bisect_right(self.starts, offset) - 1
        return index, offset - self.starts[index]

    def _last(self, offset: int) -> Tuple[int, int]:
        index = bisect_left(self.starts, offset) - 1
        return index, offset - self.starts[index]

    def splice(self, start: int, end: int, replacement) -> None:
        """
        Replace ``text[start:end]`` with a string, or with an element placed
        in the run where the tag starts.

        The replacement lands in the node holding the tag's first character;
        the tag's remaining pieces are cut from the nodes after it. Splices
        must be applied right to left so earlier offsets stay valid.
        """
        first, head = self._first(start)
        last, tail = self._last(end)
        first_node = self.nodes[first]
        prefix = (first_node.text or "")[:head]
        remainder = (self.nodes[last].text or "")[tail:]
        for node in self.nodes[first + 1:last]:
            node.text = ""
        if last != first:
            self.nodes[last].text = remainder
            remainder = None

        first_node.set(XML_SPACE, "preserve")
        if isinstance(replacement, str):
            first_node.text = prefix + replacement + (remainder or "")
            return
        first_node.text = prefix
        first_node.addnext(replacement)
        if remainder:
            rest = etree.SubElement(first_node.getparent(), W_T)
            rest.set(XML_SPACE, "preserve")
            rest.text = remainder
            replacement.addnext(rest)


def open_package(package: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(BytesIO(package))
    except (zipfile.BadZipFile, TypeError, ValueError):
        raise TemplateRenderError.from_details([
            RenderErrorDetail(tag="", explanation="The template is not a valid DOCX package")
        ])


def parse_part(data: bytes):
    return etree.fromstring(data, _PARSER)


def iter_text_parts(zf: zipfile.ZipFile) -> Iterator[Tuple[str, Optional[object]]]:
    """(part name, parsed root) for every text-bearing part, in package order.

    The root is None when the part is not well-formed XML.
    """
    for info in zf.infolist():
        if info.is_dir() or not TEXT_PART_RE.match(info.filename):
            continue
        try:
            yield info.filename, parse_part(zf.read(info))
        except etree.XMLSyntaxError:
            yield info.filename, None


def iter_paragraphs(root) -> Iterator[ParagraphText]:
    for paragraph in list(root.iter(W_P)):
        yield ParagraphText(paragraph)


@dataclass
class _ScanState:
    """Accumulator threaded through one left-to-right scan."""
    metadata: TemplateMetadata = field(default_factory=TemplateMetadata)
    seen: set = field(default_factory=set)
    last_dropdown: Optional[str] = None
    orphan_mirrors: List[Tuple[str, str]] = field(default_factory=list)

    def add_name(self, name: str):
        if name not in self.seen:
            self.seen.add(name)
            self.metadata.variable_names.append(name)


def _scan(parts: List[Tuple[str, Optional[object]]]) -> _ScanState:
    state = _ScanState()
    meta = state.metadata
    for part_name, root in parts:
        if root is None:
            continue
        for para in iter_paragraphs(root):
            for m in TOKEN_RE.finditer(para.text):
                if m.group("dropdown"):
                    name = m.group("dropdown")
                    meta.dropdown_options.setdefault(name, []).append(m.group("label").strip())
                    state.last_dropdown = name
                    state.add_name(name)
                elif m.group("mirror"):
                    name = m.group("mirror")
                    state.add_name(name)
                    if state.last_dropdown is None:
                        state.orphan_mirrors.append((part_name, name))
                        continue
                    meta.dropdown_mirrors[state.last_dropdown] = name
                    meta.mirror_sources[name] = state.last_dropdown
                else:
                    state.add_name(m.group("simple"))
    return state


def resolve_placeholders(package: bytes) -> TemplateMetadata:
    """Variable names, dropdown options and dropdown/mirror links of a template."""
    with open_package(package) as zf:
        parts = list(iter_text_parts(zf))
    return _scan(parts).metadata


def extract_variable_names(package: bytes) -> List[str]:
    return resolve_placeholders(package).variable_names


def _paragraph_problems(part_name: str, text: str) -> List[RenderErrorDetail]:
    problems = []
    if "{" not in text and "}" not in text:
        return problems

    opened_at = None
    for m in _BRACE_RE.finditer(text):
        if m.group(0) == "{":
            if opened_at is not None:
                snippet = text[opened_at:m.start()].strip()
                problems.append(RenderErrorDetail(
                    tag=snippet,
                    explanation=f"Unclosed tag '{snippet}' in {part_name}: a '{{' is never followed by '}}'",
                    part=part_name,
                ))
            opened_at = m.start()
        else:
            if opened_at is None:
                snippet = text[max(0, m.start() - 15):m.end()].strip()
                problems.append(RenderErrorDetail(
                    tag=snippet,
                    explanation=f"Unopened tag '{snippet}' in {part_name}: a '}}' has no matching '{{'",
                    part=part_name,
                ))
                continue
            tag = text[opened_at:m.end()]
            opened_at = None
            if not TOKEN_RE.fullmatch(tag):
                problems.append(RenderErrorDetail(
                    tag=tag,
                    explanation=f"Unknown tag '{tag}' in {part_name}: use {{name}}, {{#name# option}} or {{@name}}",
                    part=part_name,
                ))
    if opened_at is not None:
        snippet = text[opened_at:opened_at + 30].strip()
        problems.append(RenderErrorDetail(
            tag=snippet,
            explanation=f"Unclosed tag '{snippet}' in {part_name}: a '{{' is never followed by '}}'",
            part=part_name,
        ))
    return problems


def find_template_problems(package: bytes) -> List[RenderErrorDetail]:
    """Everything that would keep a template from rendering cleanly."""
    with open_package(package) as zf:
        parts = list(iter_text_parts(zf))
    if not any(name == "word/document.xml" for name, _ in parts):
        return [RenderErrorDetail(tag="", explanation="The template has no word/document.xml part")]
    problems: List[RenderErrorDetail] = []
    for part_name, root in parts:
        if root is None:
            problems.append(RenderErrorDetail(
                tag="",
                explanation=f"{part_name} is not well-formed XML",
                part=part_name,
            ))
            continue
        for para in iter_paragraphs(root):
            problems.extend(_paragraph_problems(part_name, para.text))
    for part_name, name in _scan(parts).orphan_mirrors:
        problems.append(RenderErrorDetail(
            tag=f"{{@{name}}}",
            explanation=f"The field '{{@{name}}}' in {part_name} has no dropdown before it",
            part=part_name,
        ))
    return problems
