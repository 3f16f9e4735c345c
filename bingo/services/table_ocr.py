"""
Registro: document classifier for uploaded bingo table photos.

The photo is preprocessed with Pillow (greyscale, autocontrast, sharpen, width 1200),
transcribed by a text extractor, and accepted when at least one campaign keyword is found.
The default extractor asks an OpenAI vision model for a verbatim transcription.
"""

import base64
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from django.conf import settings
from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError

from bingo.exceptions import ClassifierError

logger = logging.getLogger(__name__)

VALIDATION_KEYWORDS = (
    "BINGO",
    "AMIGO",
    "PRIME",
    "PELICANO",
    "PELICANOTV",
    "VIERNES",
    "8PM",
    "8 PM",
)
MIN_KEYWORDS_REQUIRED = 1
TARGET_WIDTH = 1200

TRANSCRIBE_PROMPT = (
    "You transcribe printed text from photos. Return only the text you can read in the image, "
    "line by line, without commentary. Return an empty string if there is no readable text."
)


@dataclass
class ClassificationResult:
    is_valid_document: bool
    confidence: float
    matched_keywords: list = field(default_factory=list)
    missing_keywords: list = field(default_factory=list)
    extracted_text: str = ""


def normalize_text(text: str | None) -> str:
    """Uppercase, punctuation to spaces, collapsed whitespace."""
    if not text or not isinstance(text, str):
        return ""
    text = re.sub(r"[^\w\s]", " ", text.upper())
    return re.sub(r"\s+", " ", text).strip()


def match_keywords(text: str, keywords=VALIDATION_KEYWORDS) -> tuple[list, list]:
    normalized = normalize_text(text)
    found = [kw for kw in keywords if kw in normalized]
    missing = [kw for kw in keywords if kw not in found]
    return found, missing


def preprocess_image(data: bytes) -> bytes:
    """Greyscale + autocontrast + sharpen at 1200px wide; the original bytes if Pillow cannot read them."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = img.convert("L")
            if img.width and img.width != TARGET_WIDTH:
                height = max(1, round(img.height * TARGET_WIDTH / img.width))
                img = img.resize((TARGET_WIDTH, height), Image.LANCZOS)
            img = ImageOps.autocontrast(img)
            img = img.filter(ImageFilter.SHARPEN)
            out = io.BytesIO()
            img.save(out, format="PNG")
            return out.getvalue()
    except (UnidentifiedImageError, OSError) as e:
        logger.warning("preprocess_image failed, using original bytes: %s", e)
        return data


class OpenAITextExtractor:
    """Transcribe an image through an OpenAI vision model."""

    def __init__(self, api_key: str | None = None, model: str | None = None, timeout: float = 30.0):
        self.api_key = (api_key or getattr(settings, "OPENAI_API_KEY", "") or "").strip()
        self.model = model or getattr(settings, "BINGO_OCR_MODEL", "gpt-4o-mini")
        self.timeout = timeout

    def __call__(self, image_bytes: bytes) -> str:
        if not self.api_key:
            raise ClassifierError("Document classifier is not configured", debug="OPENAI_API_KEY missing")
        from openai import OpenAI, OpenAIError

        b64 = base64.b64encode(image_bytes).decode("ascii")
        try:
            client = OpenAI(api_key=self.api_key, timeout=self.timeout)
            response = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": TRANSCRIBE_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": "Transcribe the text in this image."},
                            {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{b64}"}},
                        ],
                    },
                ],
                temperature=0,
            )
        except OpenAIError as e:
            logger.exception("OCR transcription failed: %s", e)
            raise ClassifierError(debug=str(e)[:500]) from e
        return (response.choices[0].message.content or "").strip()


class TableDocumentClassifier:
    def __init__(
        self,
        extract_text: Callable[[bytes], str] | None = None,
        keywords=VALIDATION_KEYWORDS,
        min_keywords: int = MIN_KEYWORDS_REQUIRED,
    ):
        self.extract_text = extract_text or OpenAITextExtractor()
        self.keywords = tuple(keywords)
        self.min_keywords = min_keywords

    def classify(self, image_bytes: bytes) -> ClassificationResult:
        if not image_bytes:
            raise ClassifierError("No image provided")
        text = self.extract_text(preprocess_image(image_bytes))
        found, missing = match_keywords(text, self.keywords)
        confidence = round(len(found) / len(self.keywords), 4) if self.keywords else 0.0
        result = ClassificationResult(
            is_valid_document=len(found) >= self.min_keywords,
            confidence=confidence,
            matched_keywords=found,
            missing_keywords=missing,
            extracted_text=text,
        )
        logger.info(
            "classify: valid=%s matched=%s confidence=%s",
            result.is_valid_document,
            found,
            confidence,
        )
        return result
