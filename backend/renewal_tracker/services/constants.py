"""
Constants used by the extraction, pattern and semantic analysis services.

Patterns run against text that went through ``normalize_text``: accents are
already stripped and whitespace collapsed, so they are written without
accented alternatives.
"""

# Supported file types for text extraction
SUPPORTED_TEXT_FILE_TYPES = {'txt'}
SUPPORTED_IMAGE_FILE_TYPES = {'png', 'jpg', 'jpeg'}
SUPPORTED_DOCUMENT_FILE_TYPES = {'pdf'} | SUPPORTED_IMAGE_FILE_TYPES | SUPPORTED_TEXT_FILE_TYPES

# MIME prefixes accepted at upload time
ALLOWED_MIME_PREFIXES = ('application/pdf', 'image/', 'text/plain')

# ---------------------------------------------------------------------------
# Tacit renewal detection
# ---------------------------------------------------------------------------

EXPLICIT_RENEWAL_PATTERNS = [
    r"\btacite\s+reconduction\b",
    r"\breconduction\s+tacite\b",
    r"\brenouvellement\s+automatique\b",
    r"\bautomatiquement\s+renouvele",
    r"\bprorogation\s+automatique\b",
    r"\bautomatic(?:ally)?\s+renew(?:al|ed|s)?\b",
    r"\brenew(?:s|ed)?\s+automatically\b",
    r"\bauto-?renew(?:al|s|ed)?\b",
    r"\btacit(?:ly)?\s+renew(?:al|ed)?\b",
]

IMPLICIT_RENEWAL_PATTERNS = [
    r"\b(?:sauf\s+)?denonciation\s+(?:expresse\s+)?(?:par\s+)?(?:l'une\s+des\s+)?parties?\b",
    r"\b(?:a\s+)?defaut\s+de\s+(?:denonciation|resiliation)\b",
    r"\brenouvelable\s+(?:par\s+)?periodes?\b",
    r"\bprorogation\s+d'une?\s+(?:annee|periode)\b",
    r"\bunless\s+(?:terminated|cancelled|either\s+party\s+gives)\b",
    r"\brenew(?:s|ed|able)?\s+for\s+(?:successive|additional|further)\s+(?:periods?|terms?|years?)\b",
]

# Patterns capturing a number produce notice period candidates.
# Each entry: (regex, base confidence, unit used when the pattern has no unit group)
TERMINATION_PATTERNS = [
    (r"\bpreavis\s+de\s+(?P<value>\d+)\s+(?P<unit>jours?|mois|semaines?)\b", 0.8, None),
    (r"\bdelai\s+de\s+preavis\s*(?:de\s+|:\s*)(?P<value>\d+)(?:\s+(?P<unit>jours?|mois|semaines?))?", 0.75, "jours"),
    (r"\b(?P<value>\d+)\s+(?P<unit>mois|jours?)\s+avant\s+(?:l')?echeance\b", 0.75, None),
    (r"\blettre\s+recommandee\s+avec\s+accuse\s+de\s+reception\b", 0.0, None),
    (r"\bcancellation\s+notice\s+days\s*:\s*(?P<value>\d+)", 0.8, "days"),
    (r"\bnotice\s+period\s*(?:of\s+|:\s*)(?P<value>\d+)\s+(?P<unit>days?|weeks?|months?)\b", 0.8, None),
    (r"\b(?P<value>\d+)\s+(?P<unit>days?|weeks?|months?)(?:'|\s)?\s*(?:prior\s+)?(?:written\s+)?notice\b", 0.7, None),
]

# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

_DMY = r"(?P<day>\d{1,2})[/.-](?P<month>\d{1,2})[/.-](?P<year>\d{4})"
_YMD = r"(?P<year>\d{4})[/-](?P<month>\d{1,2})[/-](?P<day>\d{1,2})"

# Structured "label: value" entries score higher than free phrasing
STRUCTURED_BASE = 0.8
ANCHORED_BASE = 0.65

DATE_PATTERNS = {
    "start_date": [
        (r"\bstart\s+date\s*:\s*" + _YMD, STRUCTURED_BASE),
        (r"\bstart\s+date\s*:\s*" + _DMY, STRUCTURED_BASE),
        (r"\bdate\s+de\s+debut\s*:\s*" + _DMY, STRUCTURED_BASE),
        (r"\b(?:prend\s+effet|commence|debute|entre\s+en\s+vigueur)\s+(?:le\s+)?" + _DMY, ANCHORED_BASE),
        (r"\b(?:a\s+)?compter\s+du\s+" + _DMY, ANCHORED_BASE),
        (r"\bdu\s+" + _DMY + r"\s+au\b", ANCHORED_BASE),
        (r"\b(?:effective|commencing|starting)\s+(?:from\s+|as\s+of\s+|on\s+)?" + _DMY, ANCHORED_BASE),
    ],
    "end_date": [
        (r"\bend\s+date\s*:\s*" + _YMD, STRUCTURED_BASE),
        (r"\bend\s+date\s*:\s*" + _DMY, STRUCTURED_BASE),
        (r"\bdate\s+de\s+fin\s*:\s*" + _DMY, STRUCTURED_BASE),
        (r"\b(?:jusqu'au|jusqu'a|se\s+termine\s+le|expire\s+le)\s+" + _DMY, ANCHORED_BASE),
        (r"\becheance\s+(?:du\s+|le\s+)?" + _DMY, ANCHORED_BASE),
        (r"\bau\s+" + _DMY, 0.55),
        (r"\b(?:until|expires?\s+on|ending\s+on|terminates\s+on)\s+" + _DMY, ANCHORED_BASE),
    ],
    "renewal_date": [
        (r"\brenewal\s+date\s*:\s*" + _YMD, STRUCTURED_BASE),
        (r"\brenouvelable\s+(?:le\s+)?" + _DMY, ANCHORED_BASE),
        (r"\bprochaine\s+echeance\s*(?:le\s+|:\s*)?" + _DMY, ANCHORED_BASE),
        (r"\bnext\s+renewal\s+(?:date\s*)?(?:on\s+|:\s*)?" + _DMY, ANCHORED_BASE),
    ],
}

# Years outside this range are treated as OCR noise
PLAUSIBLE_YEARS = (1980, 2100)
IMPLAUSIBLE_YEAR_PENALTY = 0.3

# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------

_AMOUNT = r"(?P<amount>\d{1,3}(?:[ .]\d{3})+(?:,\d{1,2})?|\d+(?:[,.]\d{1,2})?)"
_CURRENCY = r"(?P<currency>€|eur(?:os?)?\b|\$|usd\b|£|gbp\b)"
_PRE_CURRENCY = r"(?P<pre_currency>€|\$|£)"

AMOUNT_PATTERNS = {
    "monthly_amount": [
        (r"\b(?:montant\s+)?mensuel(?:le)?\s*(?:de\s+|:\s*)?" + _AMOUNT + r"\s*" + _CURRENCY + "?", ANCHORED_BASE),
        (r"\bmonthly\s+(?:fee|amount|price|payment|subscription)?\s*(?:of\s+|:\s*)?" + _PRE_CURRENCY + r"?\s*" + _AMOUNT + r"\s*" + _CURRENCY + "?", ANCHORED_BASE),
        (_PRE_CURRENCY + r"?\s*" + _AMOUNT + r"\s*" + _CURRENCY + r"?\s*(?:/\s*|par\s+|per\s+|a\s+)(?:mois|month)\b", ANCHORED_BASE),
    ],
    "annual_amount": [
        (r"\b(?:montant\s+)?annuel(?:le)?\s*(?:de\s+|:\s*)?" + _AMOUNT + r"\s*" + _CURRENCY + "?", ANCHORED_BASE),
        (r"\b(?:annual|yearly)\s+(?:fee|amount|price|payment|subscription)?\s*(?:of\s+|:\s*)?" + _PRE_CURRENCY + r"?\s*" + _AMOUNT + r"\s*" + _CURRENCY + "?", ANCHORED_BASE),
        (_PRE_CURRENCY + r"?\s*" + _AMOUNT + r"\s*" + _CURRENCY + r"?\s*(?:/\s*|par\s+|per\s+)(?:an|annee|year)\b", ANCHORED_BASE),
    ],
    "total_amount": [
        (r"\b(?:montant\s+)?total\s*:\s*" + _AMOUNT + r"\s*" + _CURRENCY + "?", STRUCTURED_BASE),
        (r"\bcout\s+(?:total\s+)?:?\s*" + _AMOUNT + r"\s*" + _CURRENCY + "?", ANCHORED_BASE),
        (r"\btotal\s+(?:amount|price|cost)\s*(?:of\s+|:\s*)?" + _PRE_CURRENCY + r"?\s*" + _AMOUNT + r"\s*" + _CURRENCY + "?", ANCHORED_BASE),
    ],
}

CURRENCY_CODES = {
    "€": "EUR",
    "eur": "EUR",
    "euro": "EUR",
    "euros": "EUR",
    "$": "USD",
    "usd": "USD",
    "£": "GBP",
    "gbp": "GBP",
}

# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

_UNIT = r"(?P<unit>ans?|annees?|mois|years?|months?)"

CONTRACT_DURATION_PATTERNS = [
    (r"\bduree\s+(?:du\s+contrat\s+)?(?:de\s+|:\s*)?(?P<value>\d+)\s+" + _UNIT, 0.75),
    (r"\bperiode\s+(?:initiale\s+)?(?:de\s+|:\s*)?(?P<value>\d+)\s+" + _UNIT, 0.7),
    (r"\b(?:contract\s+duration|initial\s+term|term\s+of)\s*(?:of\s+|:\s*)?(?P<value>\d+)\s+" + _UNIT, 0.75),
]

UNIT_TO_DAYS = {
    "jour": 1,
    "jours": 1,
    "day": 1,
    "days": 1,
    "semaine": 7,
    "semaines": 7,
    "week": 7,
    "weeks": 7,
    "mois": 30,
    "month": 30,
    "months": 30,
    "an": 365,
    "ans": 365,
    "annee": 365,
    "annees": 365,
    "year": 365,
    "years": 365,
}

# ---------------------------------------------------------------------------
# Context scoring
# ---------------------------------------------------------------------------

# Keyword stems searched within the context window around a candidate
FIELD_KEYWORDS = {
    "start_date": ["debut", "effet", "compter", "vigueur", "start", "effective", "commenc"],
    "end_date": ["fin", "terme", "echeance", "expir", "end", "until"],
    "renewal_date": ["renouvel", "reconduction", "renewal", "echeance"],
    "monthly_amount": ["mensuel", "mois", "monthly", "month"],
    "annual_amount": ["annuel", "par an", "annual", "year"],
    "total_amount": ["total", "cout", "montant", "cost"],
    "notice_period": ["preavis", "resiliation", "denonciation", "notice", "cancel", "terminat"],
    "contract_duration": ["duree", "periode", "duration", "term", "contrat"],
}

KEYWORD_BONUS = 0.1
WELL_FORMED_BONUS = 0.05
MAX_CANDIDATE_CONFIDENCE = 0.95

# Confidence reported on each tacit pattern match
MATCH_CONFIDENCE = {
    "explicit_tacit_renewal": 0.9,
    "implicit_tacit_renewal": 0.7,
    "termination_condition": 0.6,
}

# ---------------------------------------------------------------------------
# Extraction quality heuristic
# ---------------------------------------------------------------------------

CONTRACT_VOCABULARY = [
    "le", "la", "de", "et", "un", "que", "est", "pour", "du",
    "contrat", "article", "clause", "the", "and", "agreement",
]

# ---------------------------------------------------------------------------
# Gemini prompts
# ---------------------------------------------------------------------------

DOCUMENT_TRANSCRIPTION_PROMPT = """
Transcribe all text visible in this contract document.
Return plain text only, in reading order, keeping paragraph breaks as blank lines.
Do NOT summarize, translate, correct or comment on the content.
Do NOT wrap the output in markdown.
If no text is visible, return an empty response.
"""

CONTRACT_SEMANTIC_ANALYSIS_PROMPT = """
You are an expert in contract law. Analyse the contract text below and extract its renewal terms.
The output MUST be a single valid JSON object. Do NOT include any text outside of the JSON object.
The JSON object should conform to the following schema:
{
    "contract_type": "One of: insurance, telecom, energy, subscription, service, lease, other. String.",
    "is_tacit_renewal": "true if the contract renews automatically unless cancelled, otherwise false. Boolean.",
    "start_date": "Start date in YYYY-MM-DD format, or null.",
    "end_date": "End date of the current term in YYYY-MM-DD format, or null.",
    "notice_period_days": "Notice period required to cancel, expressed in days. Integer or null.",
    "amount": "Amount due per payment period. Number or null.",
    "currency": "ISO 4217 currency code such as EUR, or null.",
    "payment_frequency": "One of: monthly, quarterly, annual, other. String or null.",
    "termination_conditions": ["Short description of each termination condition"],
    "key_clauses": ["Short quote or description of each clause relevant to renewal"],
    "confidence_score": "Your overall confidence between 0 and 1. Number.",
    "field_confidences": {
        "is_tacit_renewal": "Confidence between 0 and 1 for each extracted field, keyed by field name. Number."
    }
}

Use `null` for any value that is not stated in the text. Never guess dates.
Convert notice periods to days (1 week = 7 days, 1 month = 30 days, 1 year = 365 days).

Contract text:
"""
