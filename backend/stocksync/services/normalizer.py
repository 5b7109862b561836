"""Unit and ingredient name normalization.

Pure functions shared by the matcher, the validators and the health monitor.
Every normalizer is idempotent: ``f(f(x)) == f(x)``.
"""

import re
from decimal import Decimal
from typing import Optional

# Leading words that describe an ingredient rather than name it
DESCRIPTOR_WORDS = {
    "regular", "premium", "fresh", "organic", "natural",
    "chopped", "diced", "sliced", "dried", "powdered",
    "large", "small", "medium", "mini", "jumbo",
}

# Canonical unit -> accepted spellings
UNIT_SYNONYMS = {
    "pieces": ["pieces", "piece", "pcs", "pc", "units", "unit", "ea", "each"],
    "g": ["g", "gram", "grams", "gms", "gr"],
    "kg": ["kg", "kgs", "kilogram", "kilograms", "kilo", "kilos"],
    "ml": ["ml", "milliliter", "milliliters", "millilitre", "millilitres"],
    "liters": ["liters", "liter", "litre", "litres", "l", "ltr"],
    "serving": ["serving", "servings"],
    "portion": ["portion", "portions"],
    "scoop": ["scoop", "scoops"],
}

_UNIT_LOOKUP = {
    spelling: canonical
    for canonical, spellings in UNIT_SYNONYMS.items()
    for spelling in spellings
}

# Unit classes (for compatibility checking)
WEIGHT_UNITS = {"kg", "g"}
VOLUME_UNITS = {"liters", "ml"}
COUNT_UNITS = {"pieces", "serving", "portion", "scoop"}

# Stock quantities are stored as Numeric(12, 4)
QUANTITY_STEP = Decimal("0.0001")

# Conversion factors to the base unit of each class
UNIT_FACTORS = {
    "g": Decimal("1"),
    "kg": Decimal("1000"),
    "ml": Decimal("1"),
    "liters": Decimal("1000"),
    "pieces": Decimal("1"),
    "serving": Decimal("1"),
    "portion": Decimal("1"),
    "scoop": Decimal("1"),
}

# Canonical ingredient -> known name variations seen on recipes and stock sheets
INGREDIENT_VARIATIONS = {
    "croissant": ["regular croissant", "plain croissant", "butter croissant"],
    "whipped cream": ["whip cream", "cream", "heavy cream"],
    "blueberry jam": ["blueberry", "jam blueberry", "blue berry jam"],
    "strawberry jam": ["strawberry", "jam strawberry", "straw berry jam"],
    "chocolate syrup": ["choco syrup", "chocolate sauce", "cocoa syrup"],
    "caramel syrup": ["caramel sauce", "caramel", "butterscotch syrup"],
    "nutella": ["hazelnut spread", "chocolate hazelnut", "nut spread"],
    "biscoff spread": ["biscoff", "cookie butter", "speculoos"],
    "oreo cookies": ["oreo", "chocolate cookies", "sandwich cookies"],
    "kitkat": ["kit kat", "chocolate wafer", "wafer chocolate"],
    "chopstick": ["chopsticks", "wooden sticks", "bamboo sticks"],
    "wax paper": ["parchment paper", "baking paper", "food paper"],
}

_PUNCTUATION = re.compile(r"[^\w\s]|_")


def normalize_name(text: Optional[str]) -> str:
    """Lowercase, strip punctuation, collapse whitespace and drop leading descriptors.

    A descriptor is never stripped when it is the last remaining word, so
    "Regular" stays "regular" while "Regular Croissant" becomes "croissant".
    """
    if not text:
        return ""
    name = _PUNCTUATION.sub(" ", text.lower())
    words = name.split()
    while len(words) > 1 and words[0] in DESCRIPTOR_WORDS:
        words = words[1:]
    return " ".join(words)


def normalize_unit(text: Optional[str]) -> str:
    """Map a unit spelling to its canonical token.

    Unknown units come back trimmed and lowercased so they still compare
    equal to themselves.
    """
    if not text:
        return ""
    unit = text.strip().lower()
    return _UNIT_LOOKUP.get(unit, unit)


def unit_class(unit: Optional[str]) -> Optional[str]:
    canonical = normalize_unit(unit)
    if canonical in WEIGHT_UNITS:
        return "weight"
    if canonical in VOLUME_UNITS:
        return "volume"
    if canonical in COUNT_UNITS:
        return "count"
    return None


def units_compatible(a: Optional[str], b: Optional[str]) -> bool:
    """True iff both units normalize to the same token or the same class."""
    ua, ub = normalize_unit(a), normalize_unit(b)
    if ua == ub:
        return True
    cls = unit_class(ua)
    return cls is not None and cls == unit_class(ub)


def convert_quantity(
    qty: Decimal,
    from_unit: Optional[str],
    to_unit: Optional[str],
) -> Optional[Decimal]:
    """Convert quantity between units. Returns None if incompatible."""
    src, dst = normalize_unit(from_unit), normalize_unit(to_unit)
    if src == dst:
        return qty
    if not units_compatible(src, dst):
        return None
    return quantize_quantity(qty * UNIT_FACTORS[src] / UNIT_FACTORS[dst])


def quantize_quantity(qty: Decimal) -> Decimal:
    """Round to the precision stock is stored at."""
    return Decimal(qty).quantize(QUANTITY_STEP)


def _build_alias_lookup() -> dict[str, str]:
    lookup = {}
    for canonical, variations in INGREDIENT_VARIATIONS.items():
        key = normalize_name(canonical)
        lookup[key] = key
        for variation in variations:
            lookup.setdefault(normalize_name(variation), key)
    return lookup


_ALIAS_LOOKUP = _build_alias_lookup()


def canonical_alias(name: Optional[str]) -> Optional[str]:
    """Return the canonical ingredient a name is a known variation of, if any."""
    return _ALIAS_LOOKUP.get(normalize_name(name))
