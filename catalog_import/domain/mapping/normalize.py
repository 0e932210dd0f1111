import re
from difflib import SequenceMatcher


def normalize_column_name(name: str) -> str:
    """
    Normalize a column name for comparison.

    Examples:
        "Product Name" -> "productname"
        "product_name" -> "productname"
        "Compare-At Price ($)" -> "compareatprice"
    """
    normalized = str(name).lower()
    normalized = re.sub(r"[\s\-_]+", "", normalized)
    normalized = re.sub(r"[^a-z0-9]", "", normalized)
    return normalized


def calculate_similarity(str1: str, str2: str) -> float:
    """Calculate similarity ratio between two strings (0.0 to 1.0)."""
    return SequenceMatcher(None, str1, str2).ratio()
