from __future__ import annotations
import io
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


@dataclass(frozen=True)
class ExtractedText:
	text: str
	mime_type: str


def _pdf_text(data: bytes) -> str:
	import pdfplumber

	pages_text = []
	with pdfplumber.open(io.BytesIO(data)) as pdf:
		for page in pdf.pages:
			page_text = page.extract_text() or ""
			if page_text:
				pages_text.append(page_text)
	return "\n".join(pages_text)


def _docx_text(data: bytes) -> str:
	import docx

	document = docx.Document(io.BytesIO(data))
	return "\n".join(p.text for p in document.paragraphs if p.text)


def extract_text(filename: str, content_type: str | None, data: bytes) -> ExtractedText:
	"""Plain text for an uploaded file; unknown formats and parser errors give empty text."""
	mime = content_type or ""
	name = (filename or "").lower()

	if mime.startswith("text/") or name.endswith(".txt") or name.endswith(".md"):
		return ExtractedText(data.decode("utf-8", errors="replace"), mime or "text/plain")

	if mime == PDF_MIME or name.endswith(".pdf"):
		try:
			return ExtractedText(_pdf_text(data), PDF_MIME)
		except Exception as exc:
			logger.warning("pdf extraction failed for %s: %s", filename, str(exc)[:200])
			return ExtractedText("", PDF_MIME)

	if mime == DOCX_MIME or name.endswith(".docx"):
		try:
			return ExtractedText(_docx_text(data), DOCX_MIME)
		except Exception as exc:
			logger.warning("docx extraction failed for %s: %s", filename, str(exc)[:200])
			return ExtractedText("", DOCX_MIME)

	return ExtractedText("", mime or "application/octet-stream")
