"""
Allergy checker.

Flags generated answers that mention a child's allergens or foods commonly
made from them.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


# Allergen -> related terms, used to widen the check. Keys are lower case.
ALLERGY_KEYWORD_MAP: Dict[str, List[str]] = {
    "milk": [
        "dairy", "formula", "yogurt", "yoghurt", "cheese", "lactose", "casein",
        "whey", "butter", "cream", "ice cream", "custard", "cream cheese",
        "milkshake", "buttermilk", "ghee",
    ],
    "egg": [
        "egg white", "egg yolk", "yolk", "albumin", "omelet", "omelette",
        "mayonnaise", "meringue", "custard", "eggnog", "quiche", "frittata",
        "egg noodles", "cake",
    ],
    "peanut": [
        "peanut butter", "peanut oil", "groundnut", "peanut flour",
        "satay", "nuts", "trail mix",
    ],
    "nuts": [
        "walnut", "almond", "cashew", "hazelnut", "pine nut", "pistachio",
        "pecan", "macadamia", "brazil nut", "nut butter", "almond flour",
        "marzipan", "praline", "nutella",
    ],
    "wheat": [
        "flour", "bread", "pasta", "noodle", "gluten", "cracker", "cereal",
        "malt", "semolina", "couscous", "biscuit", "bran", "spelt",
    ],
    "soy": [
        "soy milk", "soya", "tofu", "edamame", "soy sauce", "miso", "tempeh",
        "soybean", "soy protein", "natto",
    ],
    "seafood": [
        "fish", "shrimp", "prawn", "crab", "lobster", "shellfish", "squid",
        "octopus", "salmon", "tuna", "cod", "anchovy",
    ],
    "shellfish": [
        "shrimp", "prawn", "crab", "lobster", "clam", "oyster", "mussel",
        "scallop", "crayfish",
    ],
    "fruit": [
        "strawberry", "strawberries", "kiwi", "mango", "pineapple", "citrus",
        "orange", "peach",
    ],
    "strawberry": ["strawberries", "strawberry jam", "strawberry yogurt"],
    "mango": ["mango puree", "mango juice", "mango smoothie"],
    "persimmon": ["persimmons", "dried persimmon"],
}


@dataclass
class AllergyCheckResult:
    has_potential_allergy: bool
    allergens: List[str] = field(default_factory=list)


class AllergyChecker:
    """
    Case-insensitive substring matching, no word boundaries.

    A direct hit reports the allergen as configured; a hit through the
    keyword map reports ``"<allergen>(<term>)"`` for the first matching term.
    """

    def __init__(self, keyword_map: Optional[Dict[str, List[str]]] = None):
        source = ALLERGY_KEYWORD_MAP if keyword_map is None else keyword_map
        self.keyword_map = {key.lower(): terms for key, terms in source.items()}

    def check(self, text: str, allergens: Optional[List[str]]) -> AllergyCheckResult:
        if not allergens:
            return AllergyCheckResult(has_potential_allergy=False, allergens=[])

        logger.debug(f"Checking allergens: {', '.join(allergens)}")
        haystack = (text or "").lower()
        detected: List[str] = []

        for allergen in allergens:
            if not allergen:
                continue
            if allergen.lower() in haystack:
                detected.append(allergen)
                continue

            for term in self.keyword_map.get(allergen.strip().lower(), []):
                if term.lower() in haystack:
                    detected.append(f"{allergen}({term})")
                    break

        return AllergyCheckResult(has_potential_allergy=bool(detected), allergens=detected)
