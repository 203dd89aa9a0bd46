"""
Tests for document text extraction and text normalisation helpers.
"""
from unittest.mock import MagicMock

import pytest
from PIL import Image

from renewal_tracker.exceptions import ExtractionError
from renewal_tracker.models.analysis import ExtractionMethod
from renewal_tracker.services.document_extractor import DocumentExtractor, calculate_confidence
from renewal_tracker.utils.text_normalizer import (
    clean_extracted_text,
    normalize_hyphens,
    normalize_text,
    strip_accents,
)

from conftest import SAMPLE_CONTRACT_FR


class TestDocumentExtractor:

    def test_plain_text_file(self, tmp_path):
        path = tmp_path / "contrat.txt"
        path.write_text(SAMPLE_CONTRACT_FR, encoding="utf-8")

        result = DocumentExtractor(api_key="").extract(str(path))

        assert result.method == ExtractionMethod.NATIVE_TEXT
        assert "tacite reconduction" in result.text
        assert 0 < result.confidence <= 100
        assert result.metadata["file_type"] == "txt"

    def test_image_is_transcribed(self, tmp_path):
        path = tmp_path / "scan.png"
        Image.new("RGBA", (40, 20), (255, 255, 255, 0)).save(path)
        client = MagicMock()
        client.models.generate_content.return_value = MagicMock(
            text="```\nContrat de service. Préavis de 30 jours.\n```"
        )

        result = DocumentExtractor(api_key="key", model="gemini-test", client=client).extract(str(path))

        assert result.method == ExtractionMethod.GEMINI_VISION
        assert result.text == "Contrat de service. Préavis de 30 jours."
        assert client.models.generate_content.call_args.kwargs["model"] == "gemini-test"

    def test_empty_transcription_fails(self, tmp_path):
        path = tmp_path / "blank.jpg"
        Image.new("RGB", (10, 10)).save(path)
        client = MagicMock()
        client.models.generate_content.return_value = MagicMock(text="")

        with pytest.raises(ExtractionError):
            DocumentExtractor(api_key="key", client=client).extract(str(path))

    def test_image_without_api_key(self, tmp_path):
        path = tmp_path / "scan.png"
        Image.new("RGB", (10, 10)).save(path)

        with pytest.raises(ExtractionError):
            DocumentExtractor(api_key="").extract(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ExtractionError):
            DocumentExtractor(api_key="").extract(str(tmp_path / "nope.txt"))

    def test_unsupported_type(self, tmp_path):
        path = tmp_path / "contrat.docx"
        path.write_bytes(b"PK")

        with pytest.raises(ExtractionError):
            DocumentExtractor(api_key="").extract(str(path))

    def test_stitches_pages_vertically(self):
        extractor = DocumentExtractor(api_key="")
        pages = [Image.new("RGB", (30, 10)), Image.new("L", (20, 15))]

        stitched = extractor.stitch_document_content(pages)

        from io import BytesIO
        image = Image.open(BytesIO(stitched))
        assert image.size == (30, 25)


class TestCalculateConfidence:

    def test_empty_text(self):
        assert calculate_confidence("") == 0.0

    def test_contract_prose_scores_higher_than_noise(self):
        noise = "#@ %% ^^ ~~ || {} <> ** ## @@ !! ~~ ^^ %% $$ ## @@ ||"

        assert calculate_confidence(SAMPLE_CONTRACT_FR) > calculate_confidence(noise)

    def test_score_is_bounded(self):
        assert 0.0 <= calculate_confidence(SAMPLE_CONTRACT_FR * 20) <= 100.0


class TestTextNormalizer:

    def test_normalize_text(self):
        text = "Préavis  de\n2 mois avant l’échéance — durée"

        assert normalize_text(text) == "Preavis de 2 mois avant l'echeance - duree"

    def test_strip_accents(self):
        assert strip_accents("résiliation à défaut") == "resiliation a defaut"

    def test_normalize_hyphens(self):
        assert normalize_hyphens("Article 1 – Durée") == "Article 1-Durée"
        assert normalize_hyphens(None) is None

    def test_clean_extracted_text_keeps_paragraphs(self):
        cleaned = clean_extracted_text("Article 1\n\n\n\nLe contrat   prend effet ; il expire.")

        assert cleaned == "Article 1\n\nLe contrat prend effet; il expire."
