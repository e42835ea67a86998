"""
DOCX rendering.

Rewrites the paragraphs of each text part in one pass per part:
dropdown markup collapses to its label, mirror fields resolve against the
selected dropdown option, plain fields are substituted and signature fields
become inline pictures. Every other part of the package is copied through
untouched, with the original zip entry metadata, so rendering the same input
twice gives the same bytes.
"""

import base64
import hashlib
import logging
import re
import zipfile
from dataclasses import dataclass, field
from io import BytesIO
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from lxml import etree
from PIL import Image, UnidentifiedImageError

from .errors import TemplateRenderError
from .placeholders import (
    TOKEN_RE,
    TEXT_PART_RE,
    W_NS,
    TemplateMetadata,
    find_template_problems,
    iter_paragraphs,
    open_package,
    parse_part,
    resolve_placeholders,
)
from .utils import data_url_to_bytes
from .variables import FieldValues, ImageValue, TextValue, text_of, to_field_values

logger = logging.getLogger(__name__)

SIBLING_DOTS = ".........."

EMU_PER_CM = 360000
EMU_PER_PX = 9525
SIGNATURE_SIZE_EMU = (2 * EMU_PER_CM, 1 * EMU_PER_CM)
BLANK_SIZE_EMU = (EMU_PER_PX, EMU_PER_PX)

EMPTY_PNG_1X1 = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z8BQDwAEhQGAhKmMIQAAAABJRU5ErkJggg=="
)

FIXED_ZIP_TIME = (1980, 1, 1, 0, 0, 0)
IMAGE_REL_TYPE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/image"
RELS_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
CONTENT_TYPES = "[Content_Types].xml"

_INVALID_XML_CHARS = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f]")
_REL_ID_RE = re.compile(r'Id="rId(\d+)"')
_PNG_DEFAULT_RE = re.compile(r'<Default\s[^>]*Extension="png"', re.IGNORECASE)

DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def xml_safe(text: str) -> str:
    """Drop control characters XML 1.0 cannot carry."""
    return _INVALID_XML_CHARS.sub("", text)


def signature_png(value: Optional[ImageValue]) -> Tuple[bytes, bool]:
    """PNG bytes for a signature value, and whether it is a real image."""
    raw = data_url_to_bytes(value.data_url) if value is not None else None
    if not raw:
        return EMPTY_PNG_1X1, False
    try:
        with Image.open(BytesIO(raw)) as img:
            img.load()
            out = BytesIO()
            img.save(out, format="PNG")
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.warning("Unreadable signature image, using a blank placeholder: %s", exc)
        return EMPTY_PNG_1X1, False
    return out.getvalue(), True


def _rels_name(part_name: str) -> str:
    folder, _, filename = part_name.rpartition("/")
    return f"{folder}/_rels/{filename}.rels"


def _drawing(rel_id: str, doc_pr_id: int, size: Tuple[int, int]):
    cx, cy = size
    return etree.fromstring(
        f'<w:drawing xmlns:w="{W_NS}">'
        '<wp:inline xmlns:wp="http://schemas.openxmlformats.org/drawingml/2006/wordprocessingDrawing" distT="0" distB="0" distL="0" distR="0">'
        f'<wp:extent cx="{cx}" cy="{cy}"/>'
        '<wp:effectExtent l="0" t="0" r="0" b="0"/>'
        f'<wp:docPr id="{doc_pr_id}" name="Signature {doc_pr_id}"/>'
        '<wp:cNvGraphicFramePr>'
        '<a:graphicFrameLocks xmlns:a="http://schemas.openxmlformats.org/drawingml/2006/main" noChangeAspect="1"/>'
        '</wp:cNvGraphicFramePr>'
        '<a:graphic xmlns:a="http://schemas.openxmlformats.org/drawingml/2006/main">'
        '<a:graphicData uri="http://schemas.openxmlformats.org/drawingml/2006/picture">'
        '<pic:pic xmlns:pic="http://schemas.openxmlformats.org/drawingml/2006/picture">'
        f'<pic:nvPicPr><pic:cNvPr id="{doc_pr_id}" name="signature{doc_pr_id}.png"/><pic:cNvPicPr/></pic:nvPicPr>'
        '<pic:blipFill>'
        f'<a:blip xmlns:r="http://schemas.openxmlformats.org/officeDocument/2006/relationships" r:embed="{rel_id}"/>'
        '<a:stretch><a:fillRect/></a:stretch>'
        '</pic:blipFill>'
        '<pic:spPr>'
        f'<a:xfrm><a:off x="0" y="0"/><a:ext cx="{cx}" cy="{cy}"/></a:xfrm>'
        '<a:prstGeom prst="rect"><a:avLst/></a:prstGeom>'
        '</pic:spPr>'
        '</pic:pic>'
        '</a:graphicData>'
        '</a:graphic>'
        '</wp:inline>'
        '</w:drawing>'
    )


@dataclass
class _ImageRegistry:
    """Media and relationships added while rendering one package."""
    existing_rels: Dict[str, str]
    media: Dict[str, bytes] = field(default_factory=dict)
    new_rels: Dict[str, List[Tuple[str, str]]] = field(default_factory=dict)
    rel_ids: Dict[Tuple[str, str], str] = field(default_factory=dict)
    next_rel: Dict[str, int] = field(default_factory=dict)
    doc_pr_id: int = 1000

    def picture(self, part_name: str, png: bytes, size: Tuple[int, int]) -> str:
        media_name = f"word/media/signature_{hashlib.sha256(png).hexdigest()[:16]}.png"
        self.media[media_name] = png
        key = (part_name, media_name)
        if key not in self.rel_ids:
            if part_name not in self.next_rel:
                used = [int(n) for n in _REL_ID_RE.findall(self.existing_rels.get(_rels_name(part_name), ""))]
                self.next_rel[part_name] = max(used, default=0) + 1
            rel_id = f"rId{self.next_rel[part_name]}"
            self.next_rel[part_name] += 1
            self.rel_ids[key] = rel_id
            target = media_name[len("word/"):]
            self.new_rels.setdefault(part_name, []).append((rel_id, target))
        self.doc_pr_id += 1
        return _drawing(self.rel_ids[key], self.doc_pr_id, size)

    def rels_xml(self, part_name: str) -> str:
        entries = "".join(
            f'<Relationship Id="{rel_id}" Type="{IMAGE_REL_TYPE}" Target="{target}"/>'
            for rel_id, target in self.new_rels[part_name]
        )
        current = self.existing_rels.get(_rels_name(part_name))
        if current is None:
            return (
                '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
                f'<Relationships xmlns="{RELS_NS}">{entries}</Relationships>'
            )
        return current.replace("</Relationships>", entries + "</Relationships>")


@dataclass
class _PartRenderer:
    metadata: TemplateMetadata
    values: FieldValues
    signature_fields: frozenset
    images: _ImageRegistry
    mirror_counters: Dict[str, int] = field(default_factory=dict)

    def render(self, part_name: str, root) -> bool:
        """Substitute every tag under ``root`` in place; False when there were none."""
        changed = False
        for para in iter_paragraphs(root):
            # values are taken left to right so mirror occurrences count in reading order
            edits = [(m, self._replacement(part_name, m)) for m in TOKEN_RE.finditer(para.text)]
            for m, replacement in reversed(edits):
                para.splice(m.start(), m.end(), replacement)
            changed = changed or bool(edits)
        return changed

    def _replacement(self, part_name: str, m):
        if m.group("dropdown"):
            return xml_safe(m.group("label").strip())
        if m.group("mirror"):
            return xml_safe(self._mirror_value(m.group("mirror")))
        name = m.group("simple")
        if name in self.signature_fields:
            png, real = signature_png(self.values.get(name))
            size = SIGNATURE_SIZE_EMU if real else BLANK_SIZE_EMU
            return self.images.picture(part_name, png, size)
        return xml_safe(text_of(self.values, name))

    def _mirror_value(self, name: str) -> str:
        dropdown = self.metadata.mirror_sources.get(name)
        options = self.metadata.dropdown_options.get(dropdown, []) if dropdown else []
        selected = text_of(self.values, dropdown).strip()
        selected_index = options.index(selected) if selected in options else -1
        occurrence = self.mirror_counters.get(name, 0)
        self.mirror_counters[name] = occurrence + 1
        if occurrence == selected_index:
            return text_of(self.values, name).strip()
        return SIBLING_DOTS


def _coerce_values(data, signature_fields: Iterable[str]) -> FieldValues:
    if data and all(isinstance(v, (TextValue, ImageValue)) for v in data.values()):
        return dict(data)
    return to_field_values(data or {}, signature_fields)


def _copy_info(info: zipfile.ZipInfo) -> zipfile.ZipInfo:
    clone = zipfile.ZipInfo(info.filename, date_time=info.date_time)
    clone.compress_type = info.compress_type
    clone.external_attr = info.external_attr
    clone.create_system = info.create_system
    clone.comment = info.comment
    return clone


def _new_info(name: str) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=FIXED_ZIP_TIME)
    info.compress_type = zipfile.ZIP_DEFLATED
    return info


def render_document(
    template: bytes,
    data: Mapping[str, object],
    signature_fields: Iterable[str] = (),
    metadata: Optional[TemplateMetadata] = None,
) -> bytes:
    """
    Render a DOCX template with contract data.

    ``data`` is either the stored ``name -> str`` map or already-typed
    ``FieldValues``. Names in ``signature_fields`` are rendered as images
    decoded from data URLs; a missing or broken image becomes a 1x1 blank.
    Raises ``TemplateRenderError`` with an author-readable message when the
    template has malformed tags.
    """
    problems = find_template_problems(template)
    if problems:
        raise TemplateRenderError.from_details(problems)
    # metadata always comes from the untouched template bytes
    metadata = metadata or resolve_placeholders(template)
    signature_fields = frozenset(signature_fields)
    values = _coerce_values(data, signature_fields)

    with open_package(template) as zin:
        infos = list(zin.infolist())
        names = {info.filename for info in infos}
        existing_rels = {
            info.filename: zin.read(info).decode("utf-8")
            for info in infos
            if info.filename.endswith(".rels")
        }
        images = _ImageRegistry(existing_rels=existing_rels)
        renderer = _PartRenderer(metadata, values, signature_fields, images)

        rewritten: Dict[str, bytes] = {}
        for info in infos:
            if info.is_dir() or not TEXT_PART_RE.match(info.filename):
                continue
            root = parse_part(zin.read(info))
            if renderer.render(info.filename, root):
                rewritten[info.filename] = etree.tostring(
                    root, xml_declaration=True, encoding="UTF-8", standalone=True
                )

        for part_name in images.new_rels:
            rewritten[_rels_name(part_name)] = images.rels_xml(part_name).encode("utf-8")
        if images.media and CONTENT_TYPES in names:
            content_types = zin.read(CONTENT_TYPES).decode("utf-8")
            if not _PNG_DEFAULT_RE.search(content_types):
                content_types = content_types.replace(
                    "</Types>", '<Default Extension="png" ContentType="image/png"/></Types>'
                )
                rewritten[CONTENT_TYPES] = content_types.encode("utf-8")

        out = BytesIO()
        with zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED) as zout:
            for info in infos:
                payload = rewritten.pop(info.filename, None)
                if payload is None:
                    payload = zin.read(info)
                zout.writestr(_copy_info(info), payload)
            for name in sorted(rewritten):
                zout.writestr(_new_info(name), rewritten[name])
            for name in sorted(images.media):
                if name not in names:
                    zout.writestr(_new_info(name), images.media[name])
    return out.getvalue()
