"""
Free-text ingredient parser.

Turns lines like ``1½ cups flour, sifted`` into structured ingredients
(amount, unit, name, notes). Text that cannot be parsed is never dropped:
it becomes a fallback ingredient carrying the original text in its notes
with ``parse_success=False``.
"""

import html
import re
import uuid
from dataclasses import dataclass
from fractions import Fraction
from typing import Dict, List, Optional, Tuple

from schemas.recipe import ParsedIngredient

VULGAR_FRACTIONS: Dict[str, Fraction] = {
    "½": Fraction(1, 2),
    "¼": Fraction(1, 4),
    "¾": Fraction(3, 4),
    "⅓": Fraction(1, 3),
    "⅔": Fraction(2, 3),
    "⅛": Fraction(1, 8),
    "⅜": Fraction(3, 8),
    "⅝": Fraction(5, 8),
    "⅞": Fraction(7, 8),
}
FRACTION_GLYPHS: Dict[Fraction, str] = {value: glyph for glyph, value in VULGAR_FRACTIONS.items()}

# Single-letter abbreviations whose case carries meaning
CASE_SENSITIVE_UNITS: Dict[str, str] = {
    "T": "tbsp",
    "t": "tsp",
}

UNIT_SYNONYMS: Dict[str, str] = {
    "cup": "cup", "cups": "cup", "c": "cup",
    "tablespoon": "tbsp", "tablespoons": "tbsp", "tbsp": "tbsp", "tbs": "tbsp",
    "teaspoon": "tsp", "teaspoons": "tsp", "tsp": "tsp",
    "liter": "l", "liters": "l", "litre": "l", "litres": "l", "l": "l",
    "milliliter": "ml", "milliliters": "ml", "millilitre": "ml", "millilitres": "ml", "ml": "ml",
    "pint": "pint", "pints": "pint",
    "quart": "quart", "quarts": "quart",
    "gallon": "gallon", "gallons": "gallon",
    "pound": "lb", "pounds": "lb", "lb": "lb", "lbs": "lb",
    "ounce": "oz", "ounces": "oz", "oz": "oz",
    "gram": "g", "grams": "g", "g": "g",
    "kilogram": "kg", "kilograms": "kg", "kg": "kg",
    "pinch": "pinch", "pinches": "pinch",
    "dash": "dash", "dashes": "dash",
}

_AMOUNT_CHARS = r"\d\s/½¼¾⅓⅔⅛⅜⅝⅞."

# <amount><unit> <name>[, <notes>]
QUANTITY_PATTERN = re.compile(
    rf"^([{_AMOUNT_CHARS}]+)\s*([a-zA-Z]+)?\s+([^,]+)(?:,\s*(.+))?$"
)
# <name>[, <notes>]
NAME_ONLY_PATTERN = re.compile(r"^([^,]+)(?:,\s*(.+))?$")

_LEADING_QUANTITY = re.compile(r"^[\d½¼¾⅓⅔⅛⅜⅝⅞]")
_MIXED_NUMBER = re.compile(r"^(\d+)\s+(\d+)\s*/\s*(\d+)$")
_SIMPLE_FRACTION = re.compile(r"^(\d+)\s*/\s*(\d+)$")
_GLYPH_NUMBER = re.compile(r"^(\d*)\s*([½¼¾⅓⅔⅛⅜⅝⅞])$")
_DECIMAL = re.compile(r"^\d+(?:\.\d+)?$|^\.\d+$")

FALLBACK_NAME_LENGTH = 100


@dataclass
class ParsedAmount:
    amount: float
    display_amount: Optional[str] = None


def normalize_unit(token: Optional[str]) -> Optional[str]:
    """Canonical unit for ``token``, or None if it is not a known unit."""
    if not token:
        return None
    if token in CASE_SENSITIVE_UNITS:
        return CASE_SENSITIVE_UNITS[token]
    return UNIT_SYNONYMS.get(token.lower())


def _as_amount(value: Fraction) -> float:
    return round(float(value), 3)


def _fraction_display(whole: int, fraction: Fraction) -> str:
    glyph = FRACTION_GLYPHS.get(fraction)
    if glyph is None:
        text = f"{fraction.numerator}/{fraction.denominator}"
        return f"{whole} {text}" if whole else text
    return f"{whole}{glyph}" if whole else glyph


def parse_amount(text: str) -> Optional[ParsedAmount]:
    """
    Parse a quantity string.

    ``1½`` -> 1.5 (display ``1½``), ``1 1/2`` -> 1.5 (display ``1½``),
    ``3/4`` -> 0.75 (display ``¾``), ``2`` -> 2.0 (no display amount).
    Returns None when the text is not a quantity.
    """
    text = text.strip()
    if not text:
        return None

    match = _GLYPH_NUMBER.match(text)
    if match:
        whole = int(match.group(1)) if match.group(1) else 0
        return ParsedAmount(
            amount=_as_amount(whole + VULGAR_FRACTIONS[match.group(2)]),
            display_amount=text
        )

    match = _MIXED_NUMBER.match(text)
    if match:
        whole, numerator, denominator = (int(g) for g in match.groups())
        if denominator == 0:
            return None
        fraction = Fraction(numerator, denominator)
        return ParsedAmount(
            amount=_as_amount(whole + fraction),
            display_amount=_fraction_display(whole, fraction)
        )

    match = _SIMPLE_FRACTION.match(text)
    if match:
        numerator, denominator = (int(g) for g in match.groups())
        if denominator == 0:
            return None
        fraction = Fraction(numerator, denominator)
        whole, remainder = divmod(fraction, 1)
        return ParsedAmount(
            amount=_as_amount(fraction),
            display_amount=_fraction_display(int(whole), Fraction(remainder))
        )

    if _DECIMAL.match(text):
        return ParsedAmount(amount=float(text))

    return None


def _split_unit_and_name(unit_token: Optional[str], name: str) -> Tuple[str, str]:
    """An unrecognised word in the unit slot belongs to the name."""
    unit = normalize_unit(unit_token)
    if unit is None and unit_token:
        return "", f"{unit_token} {name}"
    return unit or "", name


def fallback_ingredient(text: str, position: int = 0) -> ParsedIngredient:
    return ParsedIngredient(
        id=str(uuid.uuid4()),
        name=text[:FALLBACK_NAME_LENGTH] or "Unknown ingredient",
        amount=0,
        unit="",
        notes=f"Original text: {text}",
        position=position,
        parse_success=False,
        original_text=text
    )


def parse_ingredient(raw_text: Optional[str], position: int = 0) -> ParsedIngredient:
    """Parse one ingredient line; never raises and never loses text."""
    text = html.unescape(raw_text or "").strip()
    text = re.sub(r"\s+", " ", text)

    if not text:
        return fallback_ingredient("", position)

    match = QUANTITY_PATTERN.match(text)
    if match:
        amount_text, unit_token, name, notes = match.groups()
        parsed = parse_amount(amount_text)
        name = name.strip()
        if parsed is not None and name:
            unit, name = _split_unit_and_name(unit_token, name)
            return ParsedIngredient(
                id=str(uuid.uuid4()),
                name=name,
                amount=parsed.amount,
                unit=unit,
                display_amount=parsed.display_amount,
                notes=notes.strip() if notes else None,
                position=position,
                parse_success=True,
                original_text=text
            )

    # A line that starts with a quantity but did not parse is not a bare name
    if not _LEADING_QUANTITY.match(text):
        match = NAME_ONLY_PATTERN.match(text)
        if match and match.group(1).strip():
            notes = match.group(2)
            return ParsedIngredient(
                id=str(uuid.uuid4()),
                name=match.group(1).strip(),
                amount=0,
                unit="",
                notes=notes.strip() if notes else None,
                position=position,
                parse_success=True,
                original_text=text
            )

    return fallback_ingredient(text, position)


def parse_ingredients(lines: List[Optional[str]]) -> List[ParsedIngredient]:
    """Parse lines in order; positions follow list order starting at 0."""
    return [parse_ingredient(line, position) for position, line in enumerate(lines)]
