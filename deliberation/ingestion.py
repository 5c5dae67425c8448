"""Attachment ingestion: PDF text (native, then OCR), summaries, image descriptions.

Every failure here becomes a notice in the task text. Nothing in this module
aborts a request.
"""

import asyncio
import io
import logging
import re

import pymupdf
import pytesseract
from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from config.config_loader import IngestionConfig, PromptsConfig
from deliberation.emitter import CancelToken, StreamingEmitter
from deliberation.events import Event
from deliberation.models import Attachment, AttachmentKind, ExtractionMethod, ExtractionResult
from deliberation.providers.base import NO_REASONING, ChatMessage, ProviderError, UpstreamClient, encode_data_url
from deliberation.retry import RetryController
from deliberation.turns import complete_turn, messages_for

logger = logging.getLogger(__name__)

# Meaningfulness thresholds
MIN_COMPACT_CHARS = 80
MIN_WORDS = 12
MIN_LETTERS = 30
MAX_NOISY_RUNS = 20
MIN_TRACE_CHARS = 20

_WHITESPACE = re.compile(r"\s+")
_WORD = re.compile(r"[^\W\d_]{2,}")
_LETTER = re.compile(r"[^\W\d_]")
_NOISY_RUN = re.compile(r"[^\w\s]{4,}")

DEFAULT_IMAGE_PROMPT = "Describe this image and what the user most likely needs from it."


class ExtractionFailure(Exception):
    """No usable text could be recovered from an attachment."""

    def __init__(self, message: str, page_count: int = 0) -> None:
        self.page_count = page_count
        super().__init__(message)


def is_meaningful(text: str) -> bool:
    """True when extracted text looks like prose rather than extraction noise."""
    compact = _WHITESPACE.sub(" ", text).strip()
    if len(compact) < MIN_COMPACT_CHARS:
        return False
    if len(_WORD.findall(compact)) < MIN_WORDS:
        return False
    if len(_LETTER.findall(compact)) < MIN_LETTERS:
        return False
    return len(_NOISY_RUN.findall(compact)) <= MAX_NOISY_RUNS


def _native_text(data: bytes, page_cap: int) -> tuple[str, int]:
    """Text-layer extraction with pypdf. Returns (text, total page count)."""
    try:
        reader = PdfReader(io.BytesIO(data))
        page_count = len(reader.pages)
        parts = [(page.extract_text() or "").strip() for page in reader.pages[:page_cap]]
    except (PyPdfError, ValueError) as exc:
        logger.warning("Native PDF parse failed: %s", exc)
        return "", 0
    return "\n\n".join(p for p in parts if p), page_count


def _ocr_text(data: bytes, page_cap: int, dpi: int) -> tuple[str, int]:
    """Rasterize with PyMuPDF and OCR with tesseract. Returns (text, total page count)."""
    try:
        with pymupdf.open(stream=data, filetype="pdf") as doc:
            page_count = doc.page_count
            parts = []
            for index in range(min(page_cap, page_count)):
                pixmap = doc.load_page(index).get_pixmap(dpi=dpi)
                image = Image.open(io.BytesIO(pixmap.tobytes("png")))
                parts.append(pytesseract.image_to_string(image).strip())
    except (pymupdf.FileDataError, RuntimeError, ValueError) as exc:
        logger.warning("PDF rasterization failed: %s", exc)
        return "", 0
    except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as exc:
        logger.warning("OCR failed: %s", exc)
        return "", 0
    return "\n\n".join(p for p in parts if p), page_count


def _cap_warning(page_count: int, cap: int) -> str | None:
    if page_count > cap:
        return f"Only the first {cap} of {page_count} pages were read."
    return None


def extract_pdf_text(data: bytes, config: IngestionConfig | None = None) -> ExtractionResult:
    """Native text layer first, OCR when that text fails the meaningfulness check.

    Raises:
        ExtractionFailure: Neither route produced usable text.
    """
    config = config or IngestionConfig()

    native, page_count = _native_text(data, config.native_page_cap)
    if is_meaningful(native):
        logger.info("PDF: native text, %d pages, %d chars", page_count, len(native))
        return ExtractionResult(
            native, ExtractionMethod.NATIVE, page_count,
            _cap_warning(page_count, config.native_page_cap),
        )

    logger.info("PDF: native text not meaningful (%d chars), trying OCR", len(native.strip()))
    ocr, ocr_pages = _ocr_text(data, config.ocr_page_cap, config.ocr_dpi)
    page_count = max(page_count, ocr_pages)
    if is_meaningful(ocr):
        logger.info("PDF: OCR text, %d pages, %d chars", page_count, len(ocr))
        return ExtractionResult(
            ocr, ExtractionMethod.OCR, page_count,
            _cap_warning(page_count, config.ocr_page_cap),
        )

    if len(native.strip()) > MIN_TRACE_CHARS:
        logger.warning("PDF: OCR unusable, keeping low-quality native text")
        return ExtractionResult(
            native.strip(), ExtractionMethod.NATIVE, page_count,
            "Low confidence: the text layer looks damaged and OCR could not recover it.",
        )

    raise ExtractionFailure(
        "No readable text could be extracted from this PDF (native text layer and OCR both failed).",
        page_count,
    )


async def extract_pdf_text_async(data: bytes, config: IngestionConfig | None = None) -> ExtractionResult:
    return await asyncio.to_thread(extract_pdf_text, data, config)


def chunk_text(text: str, config: IngestionConfig) -> list[str]:
    capped = text[: config.char_ceiling]
    chunks = [capped[i:i + config.chunk_chars] for i in range(0, len(capped), config.chunk_chars)]
    return chunks[: config.max_chunks]


async def summarize_document(
    client: UpstreamClient,
    retry: RetryController,
    prompts: PromptsConfig,
    text: str,
    config: IngestionConfig | None = None,
    token: CancelToken | None = None,
) -> str:
    """Summarize each chunk, then merge when there is more than one.

    A cancelled token stops before the next call and returns what was
    summarized so far.
    """
    config = config or IngestionConfig()
    chunks = chunk_text(text, config)
    if not chunks:
        return ""

    summaries: list[str] = []
    for index, chunk in enumerate(chunks, 1):
        if token is not None and token.cancelled:
            return "\n\n".join(summaries)
        summary = await complete_turn(
            client,
            retry,
            messages_for(
                prompts.summarize_chunk,
                prompts.summarize_chunk_user.format(index=index, total=len(chunks), chunk=chunk),
            ),
            label=f"summary-{index}",
            temperature=0.2,
            reasoning=NO_REASONING,
        )
        summaries.append(summary.strip())

    if len(summaries) == 1:
        return summaries[0]
    if token is not None and token.cancelled:
        return "\n\n".join(summaries)

    merged = await complete_turn(
        client,
        retry,
        messages_for(
            prompts.merge_summaries,
            prompts.merge_summaries_user.format(
                summaries="\n\n".join(f"Part {i}: {s}" for i, s in enumerate(summaries, 1))
            ),
        ),
        label="summary-merge",
        temperature=0.2,
        reasoning=NO_REASONING,
    )
    return merged.strip()


def sniff_image_mime(data: bytes) -> str:
    """MIME type from the image bytes themselves, via Pillow.

    Raises:
        ExtractionFailure: The bytes are not an image Pillow can identify.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            fmt = image.format
            image.verify()
    except (UnidentifiedImageError, OSError) as exc:
        raise ExtractionFailure(f"Unsupported or corrupt image: {exc}") from exc
    mime = Image.MIME.get(fmt or "")
    if not mime:
        raise ExtractionFailure(f"Unsupported image format: {fmt}")
    return mime


async def analyze_image(
    client: UpstreamClient,
    retry: RetryController,
    prompts: PromptsConfig,
    data: bytes,
    prompt: str = DEFAULT_IMAGE_PROMPT,
) -> str:
    """One non-streaming vision call returning a structured description."""
    mime = sniff_image_mime(data)
    messages: list[ChatMessage] = [
        {"role": "system", "content": prompts.image_analysis},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": prompts.image_analysis_user.format(prompt=prompt)},
                {"type": "image_url", "image_url": {"url": encode_data_url(mime, data)}},
            ],
        },
    ]
    description = await complete_turn(
        client, retry, messages, label="vision", temperature=0.2, reasoning=NO_REASONING,
    )
    if not description.strip():
        raise ExtractionFailure("The image analysis returned no description.")
    return description.strip()


def _notice(name: str, message: str) -> str:
    return (
        f"[Attachment notice: {name}] {message} "
        "Ask the user to paste the relevant text directly into the chat."
    )


async def prepare_task(
    task: str,
    attachments: list[Attachment],
    *,
    chat: UpstreamClient,
    vision: UpstreamClient | None,
    retry: RetryController,
    prompts: PromptsConfig,
    config: IngestionConfig,
    max_bytes: int,
    emitter: StreamingEmitter,
) -> str:
    """Splice attachment descriptions and summaries into the task text."""
    sections: list[str] = [task.strip()] if task.strip() else []

    for index, attachment in enumerate(attachments, 1):
        if emitter.cancelled:
            break
        name = attachment.name or f"attachment {index}"

        if attachment.size_bytes > max_bytes:
            logger.warning("%s: %d bytes exceeds the %d byte limit", name, attachment.size_bytes, max_bytes)
            sections.append(_notice(name, f"The file is larger than {max_bytes // (1024 * 1024)} MB and was skipped."))
            continue

        try:
            if attachment.kind is AttachmentKind.IMAGE:
                if vision is None:
                    sections.append(_notice(name, "Image analysis is not configured."))
                    continue
                await emitter.emit(Event.status(f"Analyzing image {name}..."))
                description = await analyze_image(
                    vision, retry, prompts, attachment.data, task.strip() or DEFAULT_IMAGE_PROMPT,
                )
                sections.append(f"[Attached image: {name}]\n{description}")

            elif attachment.kind is AttachmentKind.PDF:
                await emitter.emit(Event.status(f"Reading PDF {name}..."))
                result = await extract_pdf_text_async(attachment.data, config)
                if result.warning:
                    await emitter.emit(Event.status(result.warning))
                await emitter.emit(Event.status(f"Summarizing {name}..."))
                summary = await summarize_document(chat, retry, prompts, result.text, config, emitter.token)
                header = f"[Attached PDF: {name}, {result.page_count} pages, {result.method.value} text]"
                if result.warning:
                    header += f"\n(Note: {result.warning})"
                sections.append(f"{header}\n{summary}")

        except ExtractionFailure as exc:
            logger.warning("%s: %s", name, exc)
            await emitter.emit(Event.status(str(exc)))
            sections.append(_notice(name, str(exc)))
        except ProviderError as exc:
            logger.warning("%s: upstream failure during ingestion: %s", name, exc)
            sections.append(_notice(name, "The file could not be analyzed right now."))

    return "\n\n".join(sections)
