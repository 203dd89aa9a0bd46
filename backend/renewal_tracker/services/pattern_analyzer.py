import re
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple

from loguru import logger

from ..config import PipelineConfig
from ..exceptions import PatternAnalysisError
from ..models.analysis import (
    AmountCandidate,
    DateCandidate,
    DurationCandidate,
    ExtractedData,
    FlagCandidate,
    PatternMatch,
    PatternResult,
    SelectedCandidates,
)
from ..utils.text_normalizer import normalize_text
from .constants import (
    AMOUNT_PATTERNS,
    CONTRACT_DURATION_PATTERNS,
    CURRENCY_CODES,
    DATE_PATTERNS,
    EXPLICIT_RENEWAL_PATTERNS,
    FIELD_KEYWORDS,
    IMPLAUSIBLE_YEAR_PENALTY,
    IMPLICIT_RENEWAL_PATTERNS,
    KEYWORD_BONUS,
    MATCH_CONFIDENCE,
    MAX_CANDIDATE_CONFIDENCE,
    PLAUSIBLE_YEARS,
    TERMINATION_PATTERNS,
    UNIT_TO_DAYS,
    WELL_FORMED_BONUS,
)

_THOUSANDS_WITH_DOTS = re.compile(r"\d{1,3}(?:\.\d{3})+(?:,\d{1,2})?")


def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


def parse_amount(raw: str) -> float:
    """Parse '1 200,50', '1.200,50', '29.99' or '1200' into a float."""
    raw = raw.replace(" ", "")
    if _THOUSANDS_WITH_DOTS.fullmatch(raw):
        raw = raw.replace(".", "")
    return float(raw.replace(",", "."))


def convert_to_days(value: int, unit: str) -> int:
    """Convert a duration to days: weeks x7, months x30, years x365. Unknown units give 0."""
    return value * UNIT_TO_DAYS.get(unit.strip().lower(), 0)


def _overlaps(a: Tuple[int, int], b: Tuple[int, int]) -> bool:
    return a[0] < b[1] and b[0] < a[1]


def select_candidate(candidates: list, floor: float):
    """First candidate in document order at or above the floor, else the most confident."""
    if not candidates:
        return None
    for candidate in candidates:
        if candidate.confidence >= floor:
            return candidate
    return max(candidates, key=lambda c: c.confidence)


class PatternAnalyzer:
    """Rule-based detection of tacit renewal clauses and contract data."""

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()
        self._classes = {
            "explicit_tacit_renewal": (
                [_compile(p) for p in EXPLICIT_RENEWAL_PATTERNS], self.config.explicit_weight
            ),
            "implicit_tacit_renewal": (
                [_compile(p) for p in IMPLICIT_RENEWAL_PATTERNS], self.config.implicit_weight
            ),
            "termination_condition": (
                [_compile(p) for p, _, _ in TERMINATION_PATTERNS], self.config.termination_weight
            ),
        }
        self._termination = [(_compile(p), base, unit) for p, base, unit in TERMINATION_PATTERNS]
        self._dates = {
            field: [(_compile(p), base) for p, base in entries]
            for field, entries in DATE_PATTERNS.items()
        }
        self._amounts = {
            field: [(_compile(p), base) for p, base in entries]
            for field, entries in AMOUNT_PATTERNS.items()
        }
        self._durations = [(_compile(p), base) for p, base in CONTRACT_DURATION_PATTERNS]
        self._keywords = {
            field: _compile(r"\b(?:" + "|".join(re.escape(k) for k in words) + ")")
            for field, words in FIELD_KEYWORDS.items()
        }

    @property
    def patterns_tested(self) -> int:
        count = sum(len(patterns) for patterns, _ in self._classes.values())
        count += sum(len(entries) for entries in self._dates.values())
        count += sum(len(entries) for entries in self._amounts.values())
        return count + len(self._durations)

    def analyze(self, text: str, now: Optional[datetime] = None) -> PatternResult:
        """
        Analyse contract text for tacit renewal and candidate data.

        Args:
            text: Raw extracted text
            now: Analysis time, recorded in the result metadata

        Returns:
            A PatternResult with candidates, selections and warnings

        Raises:
            PatternAnalysisError: On any internal fault
        """
        if not isinstance(text, str):
            raise PatternAnalysisError(f"Expected text for pattern analysis, got {type(text).__name__}")
        now = now or datetime.now(timezone.utc)
        logger.info(f"Starting contract pattern analysis ({len(text)} chars, {self.patterns_tested} patterns)")

        try:
            normalized = normalize_text(text)
            matches, hit_classes = self._detect_tacit_renewal(normalized)

            extracted = ExtractedData(
                start_dates=self._extract_dates(normalized, "start_date"),
                end_dates=self._extract_dates(normalized, "end_date"),
                renewal_dates=self._extract_dates(normalized, "renewal_date"),
                monthly_amount=self._extract_amounts(normalized, "monthly_amount"),
                annual_amount=self._extract_amounts(normalized, "annual_amount"),
                total_amount=self._extract_amounts(normalized, "total_amount"),
                notice_periods=self._extract_notice_periods(normalized),
                contract_durations=self._extract_contract_durations(normalized),
            )
            selected = self._select(extracted)
            if selected.notice_period:
                extracted.notice_period_days = selected.notice_period.days

            confidence_score = self._score(hit_classes)
            explicit_found = sum(1 for m in matches if m.type == "explicit_tacit_renewal")
            detected = explicit_found >= 2 or confidence_score >= self.config.detection_threshold
            selected.tacit_renewal = FlagCandidate(value=detected, confidence=confidence_score)

            warnings = self._validate(extracted, selected)
            data_quality = self._data_quality(detected, matches, extracted, warnings)
        except PatternAnalysisError:
            raise
        except Exception as e:
            logger.error(f"Pattern analysis failed: {str(e)}")
            raise PatternAnalysisError(f"Pattern analysis failed: {str(e)}") from e

        result = PatternResult(
            tacit_renewal_detected=detected,
            confidence_score=confidence_score,
            patterns_matched=matches,
            extracted_data=extracted,
            selected=selected,
            validation_warnings=warnings,
            data_quality_score=data_quality,
            metadata={
                "text_length": len(text),
                "normalized_length": len(normalized),
                "patterns_tested": self.patterns_tested,
                "analysis_timestamp": now.isoformat(),
            },
        )
        logger.info(
            f"Pattern analysis completed: tacit_renewal={detected}, confidence={confidence_score}, "
            f"matches={len(matches)}, warnings={len(warnings)}"
        )
        return result

    # --- Tacit renewal ---

    def _detect_tacit_renewal(self, text: str) -> Tuple[List[PatternMatch], set]:
        matches = []
        hit_classes = set()
        for match_type, (patterns, _) in self._classes.items():
            for regex in patterns:
                found = regex.search(text)
                if not found:
                    continue
                hit_classes.add(match_type)
                matches.append(PatternMatch(
                    type=match_type,
                    pattern=regex.pattern,
                    match=found.group(0),
                    source_span=found.span(),
                    confidence=MATCH_CONFIDENCE[match_type],
                ))
        return matches, hit_classes

    def _score(self, hit_classes: set) -> float:
        # Each class counts once, so a single explicit phrase scores 3/6
        total = sum(weight for _, weight in self._classes.values())
        if total <= 0:
            return 0.0
        score = sum(weight for name, (_, weight) in self._classes.items() if name in hit_classes)
        return round(score / total, 3)

    # --- Candidate extraction ---

    def _context_bonus(self, text: str, span: Tuple[int, int], field: str) -> float:
        width = self.config.context_window_chars
        start, end = span
        window = text[max(0, start - width):start] + " " + text[end:end + width]
        return KEYWORD_BONUS if self._keywords[field].search(window) else 0.0

    @staticmethod
    def _clamp(value: float) -> float:
        return round(max(0.0, min(MAX_CANDIDATE_CONFIDENCE, value)), 3)

    @staticmethod
    def _add_candidate(candidates: list, candidate) -> None:
        """Keep one candidate per text region, the most confident one."""
        for index, existing in enumerate(candidates):
            if _overlaps(existing.source_span, candidate.source_span):
                if candidate.confidence > existing.confidence:
                    candidates[index] = candidate
                return
        candidates.append(candidate)

    def _extract_dates(self, text: str, field: str) -> List[DateCandidate]:
        candidates = []
        for regex, base in self._dates[field]:
            for match in regex.finditer(text):
                year, month, day = match.group("year"), match.group("month"), match.group("day")
                try:
                    value = date(int(year), int(month), int(day))
                except ValueError:
                    logger.debug(f"Skipping invalid date '{match.group(0)}'")
                    continue

                confidence = base + self._context_bonus(text, match.span(), field)
                iso_order = match.start("year") < match.start("day")
                if iso_order or (len(day) == 2 and len(month) == 2):
                    confidence += WELL_FORMED_BONUS
                if not PLAUSIBLE_YEARS[0] <= value.year <= PLAUSIBLE_YEARS[1]:
                    confidence -= IMPLAUSIBLE_YEAR_PENALTY

                self._add_candidate(candidates, DateCandidate(
                    field=field,
                    value=value,
                    confidence=self._clamp(confidence),
                    source_span=match.span(),
                    source_text=match.group(0),
                ))
        return sorted(candidates, key=lambda c: c.source_span[0])

    def _extract_amounts(self, text: str, field: str) -> List[AmountCandidate]:
        candidates = []
        for regex, base in self._amounts[field]:
            for match in regex.finditer(text):
                raw = match.group("amount")
                try:
                    value = parse_amount(raw)
                except ValueError:
                    logger.debug(f"Skipping unparsable amount '{raw}'")
                    continue

                groups = match.groupdict()
                symbol = groups.get("currency") or groups.get("pre_currency")
                currency = CURRENCY_CODES.get(symbol.lower()) if symbol else None

                confidence = base + self._context_bonus(text, match.span(), field)
                if currency or re.search(r"[,.]\d{1,2}$", raw):
                    confidence += WELL_FORMED_BONUS

                self._add_candidate(candidates, AmountCandidate(
                    field=field,
                    value=value,
                    currency=currency,
                    confidence=self._clamp(confidence),
                    source_span=match.span(),
                    source_text=match.group(0),
                ))
        return sorted(candidates, key=lambda c: c.source_span[0])

    def _duration_candidate(self, text, match, field, base, default_unit) -> Optional[DurationCandidate]:
        value = int(match.group("value"))
        unit = match.groupdict().get("unit") or default_unit
        if not unit:
            return None
        days = convert_to_days(value, unit)
        if days <= 0:
            return None

        confidence = base + self._context_bonus(text, match.span(), field)
        if match.groupdict().get("unit"):
            confidence += WELL_FORMED_BONUS

        return DurationCandidate(
            field=field,
            days=days,
            original_value=value,
            original_unit=unit.lower(),
            confidence=self._clamp(confidence),
            source_span=match.span(),
            source_text=match.group(0),
        )

    def _extract_notice_periods(self, text: str) -> List[DurationCandidate]:
        candidates = []
        for regex, base, default_unit in self._termination:
            if "value" not in regex.groupindex:
                continue
            for match in regex.finditer(text):
                candidate = self._duration_candidate(text, match, "notice_period", base, default_unit)
                if candidate:
                    self._add_candidate(candidates, candidate)
        return sorted(candidates, key=lambda c: c.source_span[0])

    def _extract_contract_durations(self, text: str) -> List[DurationCandidate]:
        candidates = []
        for regex, base in self._durations:
            for match in regex.finditer(text):
                candidate = self._duration_candidate(text, match, "contract_duration", base, None)
                if candidate:
                    self._add_candidate(candidates, candidate)
        return sorted(candidates, key=lambda c: c.source_span[0])

    # --- Selection and validation ---

    def _pick(self, candidates: list, kind: str):
        floor = self.config.candidate_floors.get(kind, self.config.commit_threshold)
        return select_candidate(candidates, floor)

    def _select(self, extracted: ExtractedData) -> SelectedCandidates:
        return SelectedCandidates(
            start_date=self._pick(extracted.start_dates, "date"),
            end_date=self._pick(extracted.end_dates, "date"),
            renewal_date=self._pick(extracted.renewal_dates, "date"),
            monthly_amount=self._pick(extracted.monthly_amount, "amount"),
            annual_amount=self._pick(extracted.annual_amount, "amount"),
            notice_period=self._pick(extracted.notice_periods, "duration"),
            contract_duration=self._pick(extracted.contract_durations, "duration"),
        )

    def _validate(self, extracted: ExtractedData, selected: SelectedCandidates) -> List[str]:
        config = self.config
        warnings = []

        monthly, annual = selected.monthly_amount, selected.annual_amount
        if monthly and annual:
            expected = monthly.value * 12
            if abs(annual.value - expected) > expected * config.amount_tolerance:
                warnings.append(
                    f"Monthly amount ({monthly.value:g}) x 12 does not match annual amount "
                    f"({annual.value:g}) within {config.amount_tolerance:.0%}"
                )

        low, high = config.notice_period_window
        if selected.notice_period and not low <= selected.notice_period.days <= high:
            warnings.append(
                f"Notice period of {selected.notice_period.days} days is outside {low}-{high} days"
            )

        low, high = config.contract_duration_window
        if selected.start_date and selected.end_date:
            span = (selected.end_date.value - selected.start_date.value).days
            if span <= 0:
                warnings.append("End date is on or before the start date")
            elif span > high:
                warnings.append(f"Contract duration of {span} days is unusually long")
        if selected.contract_duration and not low <= selected.contract_duration.days <= high:
            warnings.append(
                f"Stated contract duration of {selected.contract_duration.days} days is outside {low}-{high} days"
            )

        low, high = config.amount_window
        total = self._pick(extracted.total_amount, "amount")
        for candidate in (monthly, annual, total):
            if candidate and not low <= candidate.value <= high:
                warnings.append(f"Amount {candidate.value:g} ({candidate.field}) is outside the expected range")

        return warnings

    @staticmethod
    def _data_quality(detected: bool, matches: List[PatternMatch],
                      extracted: ExtractedData, warnings: List[str]) -> float:
        tacit = min(1.0, sum(m.confidence * 0.3 for m in matches)) if detected else 0.0
        quality = 0.0
        if extracted.start_dates:
            quality += 0.2
        if extracted.end_dates:
            quality += 0.2
        if extracted.monthly_amount or extracted.annual_amount:
            quality += 0.2
        if extracted.notice_period_days is not None:
            quality += 0.3
        if extracted.contract_durations:
            quality += 0.1
        consistency = max(0.0, 1.0 - len(warnings) * 0.1)
        return round(tacit * 0.4 + quality * 0.4 + consistency * 0.2, 3)


def analyze_patterns(text: str, config: Optional[PipelineConfig] = None,
                     now: Optional[datetime] = None) -> PatternResult:
    return PatternAnalyzer(config).analyze(text, now=now)


def summarize(result: PatternResult) -> Dict[str, object]:
    """Key findings for display next to a contract."""
    findings = []
    selected = result.selected
    if selected.start_date:
        findings.append(f"Start date: {selected.start_date.value.isoformat()}")
    if selected.end_date:
        findings.append(f"End date: {selected.end_date.value.isoformat()}")
    if selected.notice_period:
        findings.append(f"Notice period: {selected.notice_period.days} days")
    return {
        "tacit_renewal": result.tacit_renewal_detected,
        "confidence": result.confidence_score,
        "key_findings": findings,
    }
