import io
from pathlib import Path
from typing import List

from pypdf import PdfReader
from pptx import Presentation


TEXT_EXTENSIONS = {".txt", ".md", ".csv", ".tsv"}
IMAGE_MIME_BY_EXTENSION = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}
DOCUMENT_EXTENSIONS = {".pdf", ".pptx"}
SUPPORTED_RUBRIC_EXTENSIONS = {".json"} | TEXT_EXTENSIONS | DOCUMENT_EXTENSIONS | set(IMAGE_MIME_BY_EXTENSION)


def detect_extension(filename: str) -> str:
    return Path(filename or "").suffix.lower()


def validate_rubric_extension(extension: str) -> None:
    if extension == ".ppt":
        raise ValueError("Legacy .ppt is not supported. Please upload PPTX, PDF, JSON, text or an image.")
    if extension not in SUPPORTED_RUBRIC_EXTENSIONS:
        raise ValueError(
            "Unsupported rubric file. Please upload JSON, TXT, MD, CSV, PDF, PPTX, PNG, JPG or WEBP."
        )


def decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def extract_document_text(data: bytes, extension: str) -> str:
    """Plain text of a PDF or PPTX, one line per text run, pages in order."""
    if extension == ".pdf":
        reader = PdfReader(io.BytesIO(data))
        pages: List[str] = [(page.extract_text() or "").strip() for page in reader.pages]
        return "\n\n".join(text for text in pages if text).strip()
    if extension == ".pptx":
        presentation = Presentation(io.BytesIO(data))
        slides: List[str] = []
        for slide in presentation.slides:
            chunks = [getattr(shape, "text", "").strip() for shape in slide.shapes]
            slide_text = "\n".join(chunk for chunk in chunks if chunk)
            if slide_text:
                slides.append(slide_text)
        return "\n\n".join(slides).strip()
    raise ValueError(f"Unsupported document format: {extension}")
