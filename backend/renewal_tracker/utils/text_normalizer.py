import re
import unicodedata

_DASHES = "‐‑‒–—―−"
_APOSTROPHES = "‘’‛ʼ´`"
_DASH_TABLE = str.maketrans({c: "-" for c in _DASHES})
_APOSTROPHE_TABLE = str.maketrans({c: "'" for c in _APOSTROPHES})


def normalize_hyphens(text: str) -> str:
    """
    Remove spaces around hyphens between words, e.g., 'A - B' -> 'A-B'.
    Also collapses multiple spaces to a single space elsewhere.
    """
    if not isinstance(text, str):
        return text
    text = text.translate(_DASH_TABLE)
    text = re.sub(r'(?<=\w)\s*-\s*(?=\w)', '-', text)
    text = re.sub(r' +', ' ', text)
    return text.strip()


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize_text(text: str) -> str:
    """
    Prepare text for pattern matching.

    Accents are stripped, typographic dashes and apostrophes unified and all
    whitespace collapsed to single spaces. Offsets in the returned string are
    the ones reported in candidate source spans.
    """
    if not text:
        return ""
    text = strip_accents(text)
    text = text.translate(_DASH_TABLE).translate(_APOSTROPHE_TABLE)
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def clean_extracted_text(text: str) -> str:
    """Tidy raw transcription output while keeping paragraph breaks."""
    if not text:
        return ""
    text = re.sub(r'[ \t]+', ' ', text)
    text = re.sub(r'\n\s*\n\s*\n+', '\n\n', text)
    # Drop non-printable characters, keep letters, digits and common punctuation
    text = re.sub(r"[^\w\s\-.,;:!?()\[\]€$£%°'\"/@’«»]", '', text)
    text = re.sub(r'\s+([,;:!?])', r'\1', text)
    text = re.sub(r'([.!?]) *([A-ZÀ-Ý])', r'\1 \2', text)
    return text.strip()
