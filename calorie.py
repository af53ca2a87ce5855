"""
Calorie lookup for a free-text food label: exact table match, then the
first matching keyword rule, then a fixed default.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple

DEFAULT_CALORIES = 200
DEFAULT_FOOD_NAME = "food"
UNIT = "kcal"

# Per typical serving
CALORIE_TABLE: Dict[str, int] = {
    "apple": 95,
    "banana": 105,
    "rice": 200,            # one bowl
    "bread": 80,            # one slice of toast
    "fried chicken": 320,   # one piece
    "hamburger": 500,
    "pizza": 285,           # one slice
    "salad": 150,
    "noodles": 250,
    "sushi": 50,            # one piece
}


@dataclass(frozen=True)
class KeywordRule:
    keywords: FrozenSet[str]
    food: str

    def matches(self, label: str) -> bool:
        return any(keyword in label for keyword in self.keywords)


# Order matters: the first rule with a matching keyword wins.
KEYWORD_RULES: Tuple[KeywordRule, ...] = (
    KeywordRule(frozenset({"rice", "risotto"}), "rice"),
    KeywordRule(frozenset({"bread", "toast", "bun"}), "bread"),
    KeywordRule(frozenset({"noodle", "spaghetti", "ramen", "udon"}), "noodles"),
    KeywordRule(frozenset({"burger"}), "hamburger"),
    KeywordRule(frozenset({"pizza"}), "pizza"),
    KeywordRule(frozenset({"sushi"}), "sushi"),
    KeywordRule(frozenset({"salad"}), "salad"),
    KeywordRule(frozenset({"chicken"}), "fried chicken"),
    KeywordRule(frozenset({"apple"}), "apple"),
    KeywordRule(frozenset({"banana"}), "banana"),
)


def _check_tables():
    for name, calories in CALORIE_TABLE.items():
        if name != name.strip().lower() or not name.isascii():
            raise ValueError(f"calorie table key {name!r} is not a normalized food name")
        if not isinstance(calories, int) or calories <= 0:
            raise ValueError(f"calorie value for {name!r} must be a positive integer")
    for rule in KEYWORD_RULES:
        if rule.food not in CALORIE_TABLE:
            raise ValueError(f"keyword rule target {rule.food!r} is missing from the calorie table")


_check_tables()


@dataclass(frozen=True)
class CalorieEstimate:
    food_name: str
    estimated_calories: int
    unit: str = UNIT

    def to_dict(self) -> dict:
        return {
            "foodName": self.food_name,
            "estimatedCalories": self.estimated_calories,
            "unit": self.unit,
        }


def estimate_calories(label: str) -> CalorieEstimate:
    """
    Maps a recognized food label to a calorie estimate. Never fails: labels
    that match nothing get DEFAULT_CALORIES.

    :param label: Free-text label, any case, may carry surrounding whitespace.
    :return: CalorieEstimate
    """
    normalized = (label or "").strip().lower()

    if normalized in CALORIE_TABLE:
        return CalorieEstimate(normalized, CALORIE_TABLE[normalized])

    for rule in KEYWORD_RULES:
        if rule.matches(normalized):
            return CalorieEstimate(rule.food, CALORIE_TABLE[rule.food])

    return CalorieEstimate(normalized or DEFAULT_FOOD_NAME, DEFAULT_CALORIES)
