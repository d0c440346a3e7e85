"""
Merchant name normalization for raw card-network and bank statement strings.

Strips payment processor prefixes, location/store codes and corporate
suffixes so that "SQ *STARBUCKS STORE 12345" and "Starbucks" group together.

Usage:
    normalize_merchant("PAYPAL *NETFLIX.COM")  # "netflix.com"
    normalize_merchant("GOOGLE *YOUTUBE PREMIUM")  # "youtube premium"
"""
import re
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizationRule:
    """A single (pattern, replacement) step of the normalization pipeline."""
    name: str
    pattern: Pattern[str]
    replacement: str = " "

    def apply(self, text: str) -> str:
        return self.pattern.sub(self.replacement, text)


def _rule(name: str, pattern: str, replacement: str = " ", flags: int = re.IGNORECASE) -> NormalizationRule:
    return NormalizationRule(name=name, pattern=re.compile(pattern, flags), replacement=replacement)


# Wallet/processor tokens that precede the real merchant name.
# Order matters: longer prefixes of the same processor come first.
PAYMENT_PROCESSOR_RULES: List[NormalizationRule] = [
    _rule("paypal", r'^PAYPAL\s*\*\s*', ""),
    _rule("google_pay", r'^GOOGLE\s*PAY\s*', ""),
    _rule("google", r'^GOOGLE\s*\*\s*', ""),
    _rule("apple_bill", r'^APPLE\.COM/BILL\s*', ""),
    _rule("apple_pay", r'^APPLE\s*PAY\s*', ""),
    _rule("apple", r'^APPLE\s*\*\s*', ""),
    _rule("square", r'^SQ\s*\*\s*', ""),
    _rule("stripe", r'^STRIPE\s*\*\s*', ""),
    _rule("amazon_bill", r'^AMZN\s*\.COM/BILL\s*', ""),
    _rule("amzn", r'^AMZN\s*\*\s*', ""),
    _rule("microsoft", r'^MICROSOFT\s*\*\s*', ""),
    _rule("msft", r'^MSFT\s*\*\s*', ""),
    _rule("amazon", r'^AMAZON\s*\*\s*', ""),
    _rule("venmo", r'^VENMO\s*', ""),
    _rule("zelle", r'^ZELLE\s*', ""),
    _rule("cash_app", r'^CASH\s*APP\s*', ""),
    _rule("samsung_pay", r'^SAMSUNG\s*PAY\s*', ""),
]

# Store/location codes and identifiers. Location indicators run before the
# generic digit rules so the indicator word is removed together with its number.
NOISE_RULES: List[NormalizationRule] = [
    _rule("parenthetical", r'\([^)]*\)'),
    _rule("bracketed", r'\[[^\]]*\]'),
    _rule("store_number", r'\b(?:store|location|branch|shop)\s*#?\s*\d+'),
    _rule("street_address", r'\b\d+\s*(?:st|nd|rd|th)\s*(?:street|ave|avenue|road|rd|blvd|boulevard)\b'),
    _rule("state_zip", r'\b[A-Z]{2}\s+\d{5}(?:-\d{4})?\b', flags=0),
    _rule("zip_code", r'\b\d{5}\b'),
    _rule("long_digits", r'\d{4,}'),
    _rule("hash_code", r'#\d+'),
    _rule("asterisk", r'\s*\*+\s*'),
]

# Whole-word replacements. Symbol entries are matched with surrounding
# whitespace since they are not word characters.
WORD_REPLACEMENTS: Dict[str, str] = {
    'inc': '',
    'llc': '',
    'ltd': '',
    'corp': '',
    'corporation': '',
    'company': '',
    'co': '',
    '&': ' and ',
    '@': ' at ',
}

_REGEX_METACHARACTER = re.compile(r'^[+*?^$\\\[\]{}()|.]$')


def compile_word_replacements(replacements: Dict[str, str]) -> List[NormalizationRule]:
    """
    Build whole-word replacement rules from a mapping.

    Entries that are empty, whitespace-only or a bare regex metacharacter are
    skipped.
    """
    rules: List[NormalizationRule] = []
    for word, replacement in replacements.items():
        if not word or not word.strip() or _REGEX_METACHARACTER.match(word):
            logger.debug(f"Skipping invalid word replacement entry: {word!r}")
            continue
        try:
            escaped = re.escape(word.strip())
            if re.match(r'^\w+$', word.strip()):
                pattern = re.compile(rf'\b{escaped}\b', re.IGNORECASE)
            else:
                pattern = re.compile(rf'\s*{escaped}\s*', re.IGNORECASE)
        except re.error as exc:
            logger.debug(f"Skipping word replacement {word!r}: {exc}")
            continue
        rules.append(NormalizationRule(name=f"word:{word}", pattern=pattern, replacement=replacement))
    return rules


WORD_RULES: List[NormalizationRule] = compile_word_replacements(WORD_REPLACEMENTS)

_WHITESPACE = re.compile(r'\s+')
_EDGE_NON_WORD = re.compile(r'^[\W_]+|[\W_]+$')

MIN_NORMALIZED_LENGTH = 2


def _apply_rules(text: str, rules: List[NormalizationRule]) -> str:
    for rule in rules:
        try:
            text = rule.apply(text)
        except (re.error, TypeError, ValueError) as exc:
            logger.debug(f"Normalization rule {rule.name} failed on {text!r}: {exc}")
    return text


def normalize_merchant(raw_name: Optional[str]) -> str:
    """
    Normalize a raw merchant name from a bank statement.

    Never raises. Blank input yields "". When cleanup leaves fewer than two
    characters, the lowercased original is returned instead.

    Examples:
        normalize_merchant("PAYPAL *NETFLIX.COM")        # "netflix.com"
        normalize_merchant("APPLE.COM/BILL APPLE MUSIC") # "apple music"
        normalize_merchant("SQ *STARBUCKS STORE 12345")  # "starbucks"
    """
    if not raw_name or not isinstance(raw_name, str):
        return ""

    original = raw_name.strip()
    if not original:
        return ""

    normalized = original
    normalized = _apply_rules(normalized, PAYMENT_PROCESSOR_RULES)
    normalized = _apply_rules(normalized, NOISE_RULES)
    normalized = _apply_rules(normalized, WORD_RULES)

    normalized = _WHITESPACE.sub(' ', normalized).strip().lower()
    normalized = _EDGE_NON_WORD.sub('', normalized)

    if len(normalized) < MIN_NORMALIZED_LENGTH:
        return original.lower()

    return normalized


# Leading uppercase merchant name followed by a number, state/ZIP, '#' or date
DESCRIPTION_MERCHANT_PATTERNS: List[Pattern[str]] = [
    re.compile(r'^([A-Z\s&]+?)\s+\d'),
    re.compile(r'^([A-Z\s&]+?)\s+[A-Z]{2}\s+\d'),
    re.compile(r'^([A-Z\s&]+?)\s*#'),
    re.compile(r'^([A-Z\s&]+?)\s+\d{2}/\d{2}'),
]


def extract_merchant_from_description(description: Optional[str]) -> str:
    """
    Extract a merchant name embedded at the start of a longer description.

    Falls back to normalizing the whole description.
    """
    if not description or not isinstance(description, str):
        return ""

    for pattern in DESCRIPTION_MERCHANT_PATTERNS:
        match = pattern.match(description)
        if match and match.group(1).strip():
            return normalize_merchant(match.group(1))

    return normalize_merchant(description)


def is_payment_processor(name: Optional[str]) -> bool:
    """True when the string starts with a known payment processor prefix."""
    if not name or not isinstance(name, str):
        return False
    candidate = name.strip()
    return any(rule.pattern.search(candidate) for rule in PAYMENT_PROCESSOR_RULES)
