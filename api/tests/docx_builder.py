import zipfile
from io import BytesIO
from typing import Dict, Iterable, Optional
from xml.sax.saxutils import escape

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"

CONTENT_TYPES = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
    '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
    '<Default Extension="xml" ContentType="application/xml"/>'
    '<Override PartName="/word/document.xml" '
    'ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>'
    '</Types>'
)

ROOT_RELS = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
    '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
    '<Relationship Id="rId1" '
    'Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/officeDocument" '
    'Target="word/document.xml"/>'
    '</Relationships>'
)

DOCUMENT_RELS = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
    '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
    '<Relationship Id="rId1" '
    'Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/styles" '
    'Target="styles.xml"/>'
    '</Relationships>'
)

STYLES = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
    f'<w:styles xmlns:w="{W_NS}"><w:style w:type="paragraph" w:styleId="Normal"/></w:styles>'
)

SIGNATURE_PNG_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/Pf8icQAAAABJRU5ErkJggg=="
SIGNATURE_DATA_URL = f"data:image/png;base64,{SIGNATURE_PNG_B64}"


def paragraph(*runs: str) -> str:
    """One paragraph, one run per argument."""
    body = "".join(f'<w:r><w:t xml:space="preserve">{escape(text)}</w:t></w:r>' for text in runs)
    return f"<w:p>{body}</w:p>"


def part_xml(paragraphs: Iterable[str], root: str = "w:document") -> str:
    inner = "".join(paragraphs)
    if root == "w:document":
        inner = f"<w:body>{inner}</w:body>"
    return f'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n<{root} xmlns:w="{W_NS}">{inner}</{root}>'


def build_docx(
    body: Iterable[str],
    header: Optional[Iterable[str]] = None,
    footer: Optional[Iterable[str]] = None,
    extra: Optional[Dict[str, str]] = None,
) -> bytes:
    """
    Minimal DOCX package. ``body``, ``header`` and ``footer`` are lists of
    paragraph texts (or ``paragraph()`` results); the header is written
    before the body and the footer after it.
    """
    def paras(items):
        return [p if p.startswith("<w:p>") else paragraph(p) for p in items]

    buf = BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("[Content_Types].xml", CONTENT_TYPES)
        zf.writestr("_rels/.rels", ROOT_RELS)
        if header is not None:
            zf.writestr("word/header1.xml", part_xml(paras(header), root="w:hdr"))
        zf.writestr("word/document.xml", part_xml(paras(body)))
        if footer is not None:
            zf.writestr("word/footer1.xml", part_xml(paras(footer), root="w:ftr"))
        zf.writestr("word/_rels/document.xml.rels", DOCUMENT_RELS)
        zf.writestr("word/styles.xml", STYLES)
        for name, content in (extra or {}).items():
            zf.writestr(name, content)
    return buf.getvalue()


def read_part(package: bytes, name: str) -> str:
    with zipfile.ZipFile(BytesIO(package)) as zf:
        return zf.read(name).decode("utf-8")


def part_names(package: bytes):
    with zipfile.ZipFile(BytesIO(package)) as zf:
        return zf.namelist()
