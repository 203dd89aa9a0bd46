import io
import re
import time
from pathlib import Path
from typing import List, Optional, Tuple

import google.genai as genai
from google.genai import types
from loguru import logger
from pdf2image import convert_from_bytes
from PIL import Image

from ..config import settings
from ..exceptions import ExtractionError
from ..models.analysis import ExtractionMethod, ExtractionResult
from ..utils.text_normalizer import clean_extracted_text
from .constants import (
    CONTRACT_VOCABULARY,
    DOCUMENT_TRANSCRIPTION_PROMPT,
    SUPPORTED_DOCUMENT_FILE_TYPES,
    SUPPORTED_IMAGE_FILE_TYPES,
    SUPPORTED_TEXT_FILE_TYPES,
)

generate_content_config = types.GenerateContentConfig(
    temperature=0.0,
    response_mime_type="text/plain",
)


def calculate_confidence(text: str) -> float:
    """Text quality heuristic on a 0-100 scale."""
    if not text:
        return 0.0

    score = 50.0
    length = len(text)
    if length > 100:
        score += 10
    if length > 500:
        score += 10
    if length > 1000:
        score += 5

    alpha_count = sum(1 for c in text if c.isalpha())
    score += (alpha_count / length) * 20

    lowered = text.lower()
    vocabulary_hits = sum(1 for word in CONTRACT_VOCABULARY if re.search(rf"\b{word}\b", lowered))
    score += (vocabulary_hits / len(CONTRACT_VOCABULARY)) * 15

    special_count = len(re.findall(r"[^\w\s.,;:!?()\-]", text))
    if special_count / length > 0.3:
        score -= 20

    words = text.split(" ")
    short_words = [w for w in words if len(w.strip()) <= 2]
    if len(short_words) / len(words) > 0.4:
        score -= 15

    if re.search(r"\n\s*\n", text):
        score += 5
    if re.search(r"[.!?]", text):
        score += 5

    return round(max(0.0, min(100.0, score)), 2)


class DocumentExtractor:
    """Extract text from uploaded contract documents."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, client=None):
        self.api_key = settings.GEMINI_API_KEY if api_key is None else api_key
        self.model = model or settings.GEMINI_MODEL
        self._client = client
        logger.info(f"DocumentExtractor initialized with Gemini model {self.model}")

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise ExtractionError("Gemini API key is not configured; only plain-text uploads can be extracted")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def extract(self, file_path: str) -> ExtractionResult:
        """
        Extract text from a stored contract file.

        Args:
            file_path: Path of the uploaded file

        Returns:
            ExtractionResult with the cleaned text and a 0-100 confidence

        Raises:
            ExtractionError: On any failure, including empty output
        """
        started = time.monotonic()
        path = Path(file_path)
        logger.info(f"Extracting text from: {path.name}")

        if not path.exists():
            raise ExtractionError(f"File not found: {file_path}")

        file_ext = path.suffix.lower().lstrip('.')
        if file_ext not in SUPPORTED_DOCUMENT_FILE_TYPES:
            raise ExtractionError(f"Unsupported file type '{file_ext}' for {path.name}")

        pages = 1
        try:
            if file_ext in SUPPORTED_TEXT_FILE_TYPES:
                raw_text = path.read_text(encoding="utf-8", errors="replace")
                method = ExtractionMethod.NATIVE_TEXT
            else:
                image_bytes, pages = self._prepare_image(path.read_bytes(), file_ext)
                raw_text = self._transcribe(image_bytes, path.name)
                method = ExtractionMethod.GEMINI_VISION
        except ExtractionError:
            raise
        except Exception as e:
            logger.error(f"Text extraction error ({path.name}): {str(e)}")
            raise ExtractionError(f"Text extraction failed for {path.name}: {str(e)}") from e

        text = clean_extracted_text(raw_text)
        if not text:
            raise ExtractionError(f"No text could be extracted from {path.name}")

        confidence = calculate_confidence(text)
        elapsed = round(time.monotonic() - started, 3)
        logger.info(f"Extracted {len(text)} chars from {path.name} via {method.value} (confidence {confidence})")
        return ExtractionResult(
            text=text,
            confidence=confidence,
            method=method,
            metadata={
                "file_name": path.name,
                "file_type": file_ext,
                "pages": pages,
                "text_length": len(text),
                "processing_time": elapsed,
            },
        )

    def _prepare_image(self, file_content: bytes, file_ext: str) -> Tuple[bytes, int]:
        if file_ext == 'pdf':
            logger.info("Converting contract PDF to images")
            images = self._convert_pdf_to_images(file_content)
            if not images:
                raise ExtractionError("PDF conversion yielded no pages")
            return self.stitch_document_content(images), len(images)

        if file_ext in SUPPORTED_IMAGE_FILE_TYPES:
            image = Image.open(io.BytesIO(file_content))
            return self._get_image_bytes(self._to_rgb(image)), 1

        raise ExtractionError(f"Unsupported file type for image extraction: {file_ext}")

    def _convert_pdf_to_images(self, pdf_bytes: bytes) -> List[Image.Image]:
        """Convert PDF bytes to a list of PIL Images."""
        return convert_from_bytes(pdf_bytes)

    @staticmethod
    def _to_rgb(image: Image.Image) -> Image.Image:
        if image.mode == 'RGBA':
            background = Image.new('RGB', image.size, (255, 255, 255))
            background.paste(image, mask=image.split()[3])
            return background
        if image.mode != 'RGB':
            return image.convert('RGB')
        return image

    @staticmethod
    def _get_image_bytes(image: Image.Image) -> bytes:
        img_byte_arr = io.BytesIO()
        image.save(img_byte_arr, format='PNG')
        return img_byte_arr.getvalue()

    def stitch_document_content(self, images: List[Image.Image]) -> bytes:
        """Stitches a list of PIL Images into a single vertically stitched PNG image bytes."""
        if len(images) == 1:
            return self._get_image_bytes(self._to_rgb(images[0]))

        logger.info(f"Stitching {len(images)} image pages.")
        rgb_images = [self._to_rgb(img) for img in images]
        max_width = max(img.width for img in rgb_images)
        total_height = sum(img.height for img in rgb_images)

        stitched_image = Image.new('RGB', (max_width, total_height), (255, 255, 255))
        current_y = 0
        for img in rgb_images:
            stitched_image.paste(img, (0, current_y))
            current_y += img.height

        return self._get_image_bytes(stitched_image)

    def _transcribe(self, image_bytes: bytes, original_filename: str) -> str:
        logger.info(f"Sending contract image ('{original_filename}') to Gemini for transcription.")
        contents = [
            types.Content(
                role="user",
                parts=[
                    types.Part.from_bytes(mime_type="image/png", data=image_bytes),
                    types.Part.from_text(text=DOCUMENT_TRANSCRIPTION_PROMPT),
                ],
            ),
        ]
        response = self.client.models.generate_content(
            model=self.model,
            contents=contents,
            config=generate_content_config,
        )
        text = (response.text or "").strip()
        if text.startswith("```"):
            text = re.sub(r"^```[a-z]*\n?", "", text)
            text = re.sub(r"\n?```$", "", text)
        return text
